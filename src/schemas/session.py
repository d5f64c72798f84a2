"""Session and authentication schemas."""
from datetime import datetime, timedelta, UTC
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# Sessions have a fixed lifetime; they are replaced, never extended.
SESSION_TTL = timedelta(days=7)


class _BaseSession(BaseModel):
    """Identity fields shared by both session kinds. All are required."""

    model_config = ConfigDict(frozen=True)

    subject_id: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    username: str = Field(min_length=1)
    role: str = Field(min_length=1)
    issued_at: datetime

    @property
    def expires_at(self) -> datetime:
        """Absolute expiry of the session."""
        return self.issued_at + SESSION_TTL

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the session has outlived its TTL."""
        return (now or datetime.now(UTC)) >= self.expires_at


class LocalSession(_BaseSession):
    """Session fabricated in local mode. Never carries an upstream credential."""

    kind: Literal["local"] = "local"
    access: None = None


class DelegatedSession(_BaseSession):
    """Session backed by a bearer credential issued by the upstream identity provider."""

    kind: Literal["delegated"] = "delegated"
    access: str = Field(min_length=1)


Session = Annotated[LocalSession | DelegatedSession, Field(discriminator="kind")]

session_adapter: TypeAdapter[LocalSession | DelegatedSession] = TypeAdapter(Session)


class LoginRequest(BaseModel):
    """Username/password login form."""

    username: str = ""
    password: str = ""


class CassoLoginRequest(BaseModel):
    """Casso SSO token exchange request, using the upstream's hyphenated field names."""

    model_config = ConfigDict(populate_by_name=True)

    employee_id: str = Field(default="", alias="employee-id")
    casso_token: str = Field(default="", alias="casso-token")


class UserResponse(BaseModel):
    """Public view of the session identity. The bearer credential is never exposed."""

    id: str
    name: str
    username: str
    role: str

    @classmethod
    def from_session(cls, session: LocalSession | DelegatedSession) -> "UserResponse":
        """Build the public view from a session."""
        return cls(
            id=session.subject_id,
            name=session.display_name,
            username=session.username,
            role=session.role,
        )


class AuthResult(BaseModel):
    """Result of a login attempt."""

    success: bool
    user: UserResponse | None = None
    error: str | None = None
    redirect_url: str | None = None
