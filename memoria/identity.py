"""Request identity supplied by the auth/session layer."""

from pydantic import BaseModel

from memoria.errors import UnauthorizedError


class Identity(BaseModel):
    """The signed-in user for the current request."""

    user_id: str
    display_name: str = ""
    email: str = ""

    @property
    def speaker_name(self) -> str:
        """Name used for the user's turns in prompts and stop sequences."""
        return self.display_name or self.email or "USER"


def require_identity(identity: Identity | None) -> Identity:
    """Return *identity*, or raise ``UnauthorizedError`` if there is none."""
    if identity is None or not identity.user_id.strip():
        raise UnauthorizedError("No identity for request")
    return identity
