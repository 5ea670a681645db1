"""
Data models for the issue-tracker integration and sync layer.

Only the entity shapes the sync layer reads or writes: users and their role,
integrations and per-user OAuth grants, local issues, and the test-management
entities an issue can be attached to (used to resolve an issue's project).
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, PrimaryKeyConstraint, func, Boolean, JSON
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone


Base = declarative_base()


def utc_now() -> datetime:
    """Naive UTC timestamp, matching what DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AuditEntity:
    """Base class with audit fields."""
    created_at = Column(DateTime, quote=False, name="created_at", default=func.now())
    updated_at = Column(DateTime, quote=False, name="updated_at", default=func.now(), onupdate=func.now())


class Role(Base):
    """Roles grant application-area permissions to users."""
    __tablename__ = 'roles'
    __table_args__ = {'quote': False}

    id = Column(Integer, primary_key=True, autoincrement=True, quote=False, name="id")
    name = Column(String(100), nullable=False, unique=True, quote=False, name="name")

    # Relationships
    permissions = relationship("RolePermission", back_populates="role", cascade="all, delete-orphan")
    users = relationship("User", back_populates="role")


class RolePermission(Base):
    """Per-area permission flags for a role."""
    __tablename__ = 'role_permissions'
    __table_args__ = {'quote': False}

    id = Column(Integer, primary_key=True, autoincrement=True, quote=False, name="id")
    role_id = Column(Integer, ForeignKey('roles.id'), nullable=False, quote=False, name="role_id")
    application_area = Column(String(100), nullable=False, quote=False, name="application_area")
    can_add_edit = Column(Boolean, nullable=False, default=False, quote=False, name="can_add_edit")
    can_delete = Column(Boolean, nullable=False, default=False, quote=False, name="can_delete")

    role = relationship("Role", back_populates="permissions")


class User(Base, AuditEntity):
    """Users acting on integrations (job payloads carry the user id)."""
    __tablename__ = 'users'
    __table_args__ = {'quote': False}

    id = Column(String(64), primary_key=True, quote=False, name="id")
    name = Column(String(255), quote=False, name="name")
    email = Column(String(255), unique=True, nullable=False, quote=False, name="email")
    role_id = Column(Integer, ForeignKey('roles.id'), quote=False, name="role_id")
    is_active = Column(Boolean, nullable=False, default=True, quote=False, name="is_active")

    # Relationships
    role = relationship("Role", back_populates="users")
    integration_auths = relationship("UserIntegrationAuth", back_populates="user", cascade="all, delete-orphan")


class Project(Base, AuditEntity):
    """Projects own test cases, sessions, runs and issues."""
    __tablename__ = 'projects'
    __table_args__ = {'quote': False}

    id = Column(Integer, primary_key=True, autoincrement=True, quote=False, name="id")
    name = Column(String, nullable=False, quote=False, name="name")

    issues = relationship("Issue", back_populates="project")


class Integration(Base, AuditEntity):
    """A configured connection to one external issue tracker."""
    __tablename__ = 'integrations'
    __table_args__ = {'quote': False}

    id = Column(Integer, primary_key=True, autoincrement=True, quote=False, name="id")
    name = Column(String(255), nullable=False, quote=False, name="name")
    provider = Column(String(50), nullable=False, quote=False, name="provider")  # JIRA, GITHUB, AZURE_DEVOPS, SIMPLE_URL
    status = Column(String(20), nullable=False, default='ACTIVE', quote=False, name="status")  # ACTIVE, INACTIVE
    auth_type = Column(String(50), nullable=False, default='NONE', quote=False, name="auth_type")  # OAUTH2, API_KEY, PERSONAL_ACCESS_TOKEN, NONE
    credentials = Column(JSON, quote=False, name="credentials")  # plain object or {"encrypted": "<blob>"}
    settings = Column(JSON, default=dict, quote=False, name="settings")  # baseUrl, organizationUrl, project, repository...
    is_deleted = Column(Boolean, nullable=False, default=False, quote=False, name="is_deleted")

    # Relationships
    user_integration_auths = relationship("UserIntegrationAuth", back_populates="integration", cascade="all, delete-orphan")
    issues = relationship("Issue", back_populates="integration")


class UserIntegrationAuth(Base, AuditEntity):
    """Per-user OAuth grant bound to an integration."""
    __tablename__ = 'user_integration_auths'
    __table_args__ = {'quote': False}

    id = Column(Integer, primary_key=True, autoincrement=True, quote=False, name="id")
    user_id = Column(String(64), ForeignKey('users.id'), nullable=False, quote=False, name="user_id")
    integration_id = Column(Integer, ForeignKey('integrations.id'), nullable=False, quote=False, name="integration_id")
    access_token = Column(Text, quote=False, name="access_token")  # encrypted
    refresh_token = Column(Text, quote=False, name="refresh_token")  # encrypted
    expires_at = Column(DateTime, quote=False, name="expires_at")
    is_active = Column(Boolean, nullable=False, default=True, quote=False, name="is_active")

    user = relationship("User", back_populates="integration_auths")
    integration = relationship("Integration", back_populates="user_integration_auths")


class Issue(Base):
    """Local record of a tracked external issue."""
    __tablename__ = 'issues'
    __table_args__ = {'quote': False}

    id = Column(Integer, primary_key=True, autoincrement=True, quote=False, name="id")
    name = Column(String, nullable=False, quote=False, name="name")
    title = Column(String, quote=False, name="title")
    description = Column(Text, quote=False, name="description")
    status = Column(String(100), quote=False, name="status")
    priority = Column(String(100), quote=False, name="priority")

    integration_id = Column(Integer, ForeignKey('integrations.id'), quote=False, name="integration_id")
    project_id = Column(Integer, ForeignKey('projects.id'), quote=False, name="project_id")

    # External tracker fields
    external_id = Column(String, quote=False, name="external_id")
    external_key = Column(String, quote=False, name="external_key")
    external_url = Column(Text, quote=False, name="external_url")
    external_status = Column(String(100), quote=False, name="external_status")
    external_data = Column(JSON, quote=False, name="external_data")
    data = Column(JSON, quote=False, name="data")

    issue_type_id = Column(String, quote=False, name="issue_type_id")
    issue_type_name = Column(String, quote=False, name="issue_type_name")
    issue_type_icon_url = Column(Text, quote=False, name="issue_type_icon_url")

    last_synced_at = Column(DateTime, quote=False, name="last_synced_at")
    is_deleted = Column(Boolean, nullable=False, default=False, quote=False, name="is_deleted")
    created_at = Column(DateTime, quote=False, name="created_at", default=func.now())

    # Relationships
    integration = relationship("Integration", back_populates="issues")
    project = relationship("Project", back_populates="issues")
    repository_cases = relationship("RepositoryCase", secondary="issues_repository_cases", back_populates="issues")
    sessions = relationship("TestSession", secondary="issues_sessions", back_populates="issues")
    test_runs = relationship("TestRun", secondary="issues_test_runs", back_populates="issues")
    session_results = relationship("SessionResult", secondary="issues_session_results", back_populates="issues")
    test_run_results = relationship("TestRunResult", secondary="issues_test_run_results", back_populates="issues")
    test_run_step_results = relationship("TestRunStepResult", secondary="issues_test_run_step_results", back_populates="issues")


class RepositoryCase(Base):
    """Test case in a project repository."""
    __tablename__ = 'repository_cases'
    __table_args__ = {'quote': False}

    id = Column(Integer, primary_key=True, autoincrement=True, quote=False, name="id")
    name = Column(String, nullable=False, quote=False, name="name")
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, quote=False, name="project_id")

    project = relationship("Project")
    issues = relationship("Issue", secondary="issues_repository_cases", back_populates="repository_cases")


class TestSession(Base):
    """Exploratory test session."""
    __tablename__ = 'sessions'
    __table_args__ = {'quote': False}

    id = Column(Integer, primary_key=True, autoincrement=True, quote=False, name="id")
    name = Column(String, nullable=False, quote=False, name="name")
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, quote=False, name="project_id")

    project = relationship("Project")
    issues = relationship("Issue", secondary="issues_sessions", back_populates="sessions")


class TestRun(Base):
    """Test run."""
    __tablename__ = 'test_runs'
    __table_args__ = {'quote': False}

    id = Column(Integer, primary_key=True, autoincrement=True, quote=False, name="id")
    name = Column(String, nullable=False, quote=False, name="name")
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, quote=False, name="project_id")

    project = relationship("Project")
    issues = relationship("Issue", secondary="issues_test_runs", back_populates="test_runs")


class SessionResult(Base):
    """Result recorded inside a session."""
    __tablename__ = 'session_results'
    __table_args__ = {'quote': False}

    id = Column(Integer, primary_key=True, autoincrement=True, quote=False, name="id")
    session_id = Column(Integer, ForeignKey('sessions.id'), nullable=False, quote=False, name="session_id")

    session = relationship("TestSession")
    issues = relationship("Issue", secondary="issues_session_results", back_populates="session_results")


class TestRunResult(Base):
    """Result of one case inside a test run."""
    __tablename__ = 'test_run_results'
    __table_args__ = {'quote': False}

    id = Column(Integer, primary_key=True, autoincrement=True, quote=False, name="id")
    test_run_id = Column(Integer, ForeignKey('test_runs.id'), nullable=False, quote=False, name="test_run_id")

    test_run = relationship("TestRun")
    issues = relationship("Issue", secondary="issues_test_run_results", back_populates="test_run_results")


class TestRunStepResult(Base):
    """Result of one step of a test run result."""
    __tablename__ = 'test_run_step_results'
    __table_args__ = {'quote': False}

    id = Column(Integer, primary_key=True, autoincrement=True, quote=False, name="id")
    test_run_result_id = Column(Integer, ForeignKey('test_run_results.id'), nullable=False, quote=False, name="test_run_result_id")

    test_run_result = relationship("TestRunResult")
    issues = relationship("Issue", secondary="issues_test_run_step_results", back_populates="test_run_step_results")


# Relationship tables between issues and the entities they are attached to

class IssueRepositoryCase(Base):
    __tablename__ = 'issues_repository_cases'
    __table_args__ = (PrimaryKeyConstraint('issue_id', 'repository_case_id'), {'quote': False})

    issue_id = Column(Integer, ForeignKey('issues.id'), primary_key=True, quote=False, name="issue_id")
    repository_case_id = Column(Integer, ForeignKey('repository_cases.id'), primary_key=True, quote=False, name="repository_case_id")


class IssueSession(Base):
    __tablename__ = 'issues_sessions'
    __table_args__ = (PrimaryKeyConstraint('issue_id', 'session_id'), {'quote': False})

    issue_id = Column(Integer, ForeignKey('issues.id'), primary_key=True, quote=False, name="issue_id")
    session_id = Column(Integer, ForeignKey('sessions.id'), primary_key=True, quote=False, name="session_id")


class IssueTestRun(Base):
    __tablename__ = 'issues_test_runs'
    __table_args__ = (PrimaryKeyConstraint('issue_id', 'test_run_id'), {'quote': False})

    issue_id = Column(Integer, ForeignKey('issues.id'), primary_key=True, quote=False, name="issue_id")
    test_run_id = Column(Integer, ForeignKey('test_runs.id'), primary_key=True, quote=False, name="test_run_id")


class IssueSessionResult(Base):
    __tablename__ = 'issues_session_results'
    __table_args__ = (PrimaryKeyConstraint('issue_id', 'session_result_id'), {'quote': False})

    issue_id = Column(Integer, ForeignKey('issues.id'), primary_key=True, quote=False, name="issue_id")
    session_result_id = Column(Integer, ForeignKey('session_results.id'), primary_key=True, quote=False, name="session_result_id")


class IssueTestRunResult(Base):
    __tablename__ = 'issues_test_run_results'
    __table_args__ = (PrimaryKeyConstraint('issue_id', 'test_run_result_id'), {'quote': False})

    issue_id = Column(Integer, ForeignKey('issues.id'), primary_key=True, quote=False, name="issue_id")
    test_run_result_id = Column(Integer, ForeignKey('test_run_results.id'), primary_key=True, quote=False, name="test_run_result_id")


class IssueTestRunStepResult(Base):
    __tablename__ = 'issues_test_run_step_results'
    __table_args__ = (PrimaryKeyConstraint('issue_id', 'test_run_step_result_id'), {'quote': False})

    issue_id = Column(Integer, ForeignKey('issues.id'), primary_key=True, quote=False, name="issue_id")
    test_run_step_result_id = Column(Integer, ForeignKey('test_run_step_results.id'), primary_key=True, quote=False, name="test_run_step_result_id")
