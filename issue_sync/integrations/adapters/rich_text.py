"""
Rich-text conversion between the editor JSON, HTML and Jira's Atlassian Document Format (ADF).

- adf_to_html: Jira issue descriptions -> HTML for local storage and display
- tiptap_to_adf: rich-text editor JSON -> ADF for issue creation
- html_to_adf: HTML (editor output stored as markup) -> ADF, best effort
- extract_text: rich-text editor JSON -> plain text (providers without a rich format)
"""

import re
from typing import Any, Dict, List, Optional

_HTML_ESCAPES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#39;",
}
_TAG_RE = re.compile(r'<[^>]*>')
_BLOCK_SPLIT_RE = re.compile(r'</p>|</h[1-6]>|</li>|</blockquote>')
_INLINE_PATTERNS = [
    (re.compile(r'<(strong|b)>(.*?)</(strong|b)>'), 2, 'strong'),
    (re.compile(r'<(em|i)>(.*?)</(em|i)>'), 2, 'em'),
    (re.compile(r'<u>(.*?)</u>'), 1, 'underline'),
    (re.compile(r'<code>(.*?)</code>'), 1, 'code'),
]
_TIPTAP_MARKS = {
    'bold': 'strong',
    'strong': 'strong',
    'italic': 'em',
    'em': 'em',
    'underline': 'underline',
    'strike': 'strike',
    'code': 'code',
}


def escape_html(text: str) -> str:
    return "".join(_HTML_ESCAPES.get(ch, ch) for ch in text)


def _strip_tags(text: str) -> str:
    return _TAG_RE.sub("", text)


def _empty_doc() -> Dict[str, Any]:
    return {"type": "doc", "version": 1, "content": []}


def _text_paragraph(text: str) -> Dict[str, Any]:
    return {"type": "paragraph", "content": [{"type": "text", "text": text}]}


# ---------------------------------------------------------------------------
# ADF -> HTML
# ---------------------------------------------------------------------------

def adf_to_html(content: List[Dict[str, Any]]) -> str:
    return "".join(_adf_node_to_html(node) for node in content or []).strip()


def _children_html(node: Dict[str, Any]) -> str:
    return "".join(_adf_node_to_html(child) for child in node.get('content') or [])


def _apply_marks(text: str, marks: List[Dict[str, Any]]) -> str:
    for mark in marks:
        mark_type = mark.get('type')
        if mark_type == 'strong':
            text = f"<strong>{text}</strong>"
        elif mark_type == 'em':
            text = f"<em>{text}</em>"
        elif mark_type == 'underline':
            text = f"<u>{text}</u>"
        elif mark_type == 'strike':
            text = f"<s>{text}</s>"
        elif mark_type == 'code':
            text = f"<code>{text}</code>"
        elif mark_type == 'link':
            href = escape_html((mark.get('attrs') or {}).get('href') or "")
            text = f'<a href="{href}" target="_blank" rel="noopener noreferrer">{text}</a>'
    return text


def _adf_node_to_html(node: Optional[Dict[str, Any]]) -> str:
    if not node:
        return ""

    node_type = node.get('type')
    attrs = node.get('attrs') or {}

    if node_type == 'paragraph':
        return f"<p>{_children_html(node)}</p>"

    if node_type == 'heading':
        level = min(attrs.get('level') or 1, 6)
        return f"<h{level}>{_children_html(node)}</h{level}>"

    if node_type == 'bulletList':
        return f"<ul>{_children_html(node)}</ul>"

    if node_type == 'orderedList':
        return f"<ol>{_children_html(node)}</ol>"

    if node_type == 'listItem':
        parts = []
        for child in node.get('content') or []:
            # Paragraphs inside list items are unwrapped
            if child.get('type') == 'paragraph':
                parts.append(_children_html(child))
            else:
                parts.append(_adf_node_to_html(child))
        return f"<li>{''.join(parts)}</li>"

    if node_type == 'blockquote':
        return f"<blockquote>{_children_html(node)}</blockquote>"

    if node_type == 'codeBlock':
        code = "".join(
            (child.get('text') or "") if child.get('type') == 'text' else _adf_node_to_html(child)
            for child in node.get('content') or []
        )
        language = attrs.get('language') or ""
        class_attr = f' class="language-{language}"' if language else ""
        return f"<pre><code{class_attr}>{escape_html(code)}</code></pre>"

    if node_type == 'text':
        return _apply_marks(escape_html(node.get('text') or ""), node.get('marks') or [])

    if node_type == 'hardBreak':
        return "<br>"

    if node_type == 'rule':
        return "<hr>"

    if node_type == 'mention':
        mention = attrs.get('text') or attrs.get('displayName') or "@user"
        return f'<span class="mention">{escape_html(mention)}</span>'

    if node_type == 'emoji':
        return escape_html(attrs.get('shortName') or attrs.get('text') or "")

    if node_type == 'table':
        return f"<table>{_children_html(node)}</table>"

    if node_type == 'tableRow':
        return f"<tr>{_children_html(node)}</tr>"

    if node_type in ('tableCell', 'tableHeader'):
        tag = 'th' if node_type == 'tableHeader' else 'td'
        return f"<{tag}>{_children_html(node)}</{tag}>"

    if node.get('content'):
        return _children_html(node)
    if node.get('text'):
        return escape_html(node['text'])
    return ""


# ---------------------------------------------------------------------------
# Rich-text editor JSON -> ADF
# ---------------------------------------------------------------------------

def tiptap_to_adf(editor_json: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    doc = _empty_doc()

    if not editor_json or not editor_json.get('content'):
        return doc

    for node in editor_json['content']:
        adf_node = _tiptap_node_to_adf(node)
        if adf_node:
            doc['content'].append(adf_node)

    if not doc['content']:
        doc['content'].append({"type": "paragraph", "content": []})

    return doc


def _tiptap_children(node: Dict[str, Any]) -> List[Dict[str, Any]]:
    converted = (_tiptap_node_to_adf(child) for child in node.get('content') or [])
    return [child for child in converted if child]


def _tiptap_node_to_adf(node: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not node:
        return None

    node_type = node.get('type')
    attrs = node.get('attrs') or {}

    if node_type == 'paragraph':
        return {"type": "paragraph", "content": _tiptap_inline(node.get('content') or [])}

    if node_type == 'heading':
        return {
            "type": "heading",
            "attrs": {"level": attrs.get('level') or 1},
            "content": _tiptap_inline(node.get('content') or []),
        }

    if node_type in ('bulletList', 'orderedList', 'listItem', 'blockquote'):
        return {"type": node_type, "content": _tiptap_children(node)}

    if node_type == 'codeBlock':
        text = "".join(child.get('text') or "" for child in node.get('content') or [])
        return {
            "type": "codeBlock",
            "attrs": {"language": attrs.get('language') or None},
            "content": [{"type": "text", "text": text}],
        }

    if node_type == 'horizontalRule':
        return {"type": "rule"}

    if node_type == 'hardBreak':
        return {"type": "hardBreak"}

    if node_type == 'text':
        # Text is handled by _tiptap_inline
        return None

    if node.get('content'):
        return {"type": "paragraph", "content": _tiptap_inline(node['content'])}
    return None


def _tiptap_inline(content: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    result = []

    for node in content:
        if node.get('type') != 'text':
            converted = _tiptap_node_to_adf(node)
            if converted:
                result.append(converted)
            continue

        text_node: Dict[str, Any] = {"type": "text", "text": node.get('text') or ""}
        adf_marks = []
        for mark in node.get('marks') or []:
            mark_type = mark.get('type')
            if mark_type in _TIPTAP_MARKS:
                adf_marks.append({"type": _TIPTAP_MARKS[mark_type]})
            elif mark_type == 'link':
                adf_marks.append({"type": "link", "attrs": {"href": (mark.get('attrs') or {}).get('href') or ""}})
        if adf_marks:
            text_node['marks'] = adf_marks
        result.append(text_node)

    return result


# ---------------------------------------------------------------------------
# HTML -> ADF
# ---------------------------------------------------------------------------

def html_to_adf(html: str) -> Dict[str, Any]:
    doc = _empty_doc()

    for block in _BLOCK_SPLIT_RE.split(html):
        if not block.strip():
            continue

        heading = re.search(r'<h([1-6])>', block)
        if heading:
            text = _strip_tags(block).strip()
            if text:
                doc['content'].append({
                    "type": "heading",
                    "attrs": {"level": min(int(heading.group(1)), 6)},
                    "content": [{"type": "text", "text": text}],
                })
            continue

        if '<ul>' in block or '<ol>' in block:
            list_type = 'bulletList' if '<ul>' in block else 'orderedList'
            items = []
            for item in block.split('</li>'):
                item_text = _strip_tags(item).strip()
                if item_text:
                    items.append({"type": "listItem", "content": [_text_paragraph(item_text)]})
            if items:
                doc['content'].append({"type": list_type, "content": items})
            continue

        if '<blockquote>' in block:
            text = _strip_tags(block).strip()
            if text:
                doc['content'].append({"type": "blockquote", "content": [_text_paragraph(text)]})
            continue

        paragraph = re.sub(r'<p[^>]*>', '', block, count=1)
        if not paragraph.strip():
            continue

        inline = _html_inline_to_adf(paragraph)
        if inline:
            doc['content'].append({"type": "paragraph", "content": inline})

    if not doc['content']:
        doc['content'].append({"type": "paragraph", "content": []})

    return doc


def _html_inline_to_adf(remaining: str) -> List[Dict[str, Any]]:
    content = []

    while remaining:
        for pattern, group, mark in _INLINE_PATTERNS:
            match = pattern.search(remaining)
            if match:
                before = _strip_tags(remaining[:match.start()])
                if before:
                    content.append({"type": "text", "text": before})
                content.append({"type": "text", "text": match.group(group), "marks": [{"type": mark}]})
                remaining = remaining[match.end():]
                break
        else:
            plain = _strip_tags(remaining).strip()
            if plain:
                content.append({"type": "text", "text": plain})
            break

    return content


# ---------------------------------------------------------------------------
# Rich-text editor JSON -> plain text
# ---------------------------------------------------------------------------

def extract_text(editor_json: Dict[str, Any]) -> str:
    text = ""
    for node in editor_json.get('content') or []:
        if node.get('type') == 'text':
            text += node.get('text') or ""
        elif isinstance(node.get('content'), list):
            text += extract_text(node) + "\n"
    return text.strip()


def is_editor_document(value: Any) -> bool:
    return isinstance(value, dict) and value.get('type') == 'doc'
