import socket
from dataclasses import dataclass
from typing import Optional

from config import Mqtt2FileConfig


class IdentityError(Exception):
    """Raised when the local host name cannot be resolved."""


@dataclass(frozen=True)
class ClientIdentity:
    """Client identity derived from the host name and an optional suffix.

    The same host and suffix always render the same client id, which is what
    lets the broker resume a persistent session after a restart.
    """

    base_name: str
    suffix: str = ""

    @property
    def client_id(self) -> str:
        if self.suffix:
            return f"{self.base_name}-{self.suffix}"
        return self.base_name

    @property
    def wants_persistent_session(self) -> bool:
        return bool(self.suffix)

    def __str__(self) -> str:
        return self.client_id


@dataclass(frozen=True)
class SessionPolicy:
    persistent: bool
    session_expiry: int

    @property
    def clean_start(self) -> bool:
        return not self.persistent


def create_client_identity(
    suffix: Optional[str] = "",
    host: Optional[str] = None,
    prefix: str = Mqtt2FileConfig.CLIENT_ID_PREFIX,
) -> ClientIdentity:
    """Build the client identity `<prefix>-<host>[-<suffix>]`.

    Args:
        suffix: Optional client id suffix. Empty means a clean session.
        host: Host name to use. Resolved from the local host when omitted.
        prefix: Client id prefix.

    Raises:
        IdentityError: If the host name cannot be resolved.
    """
    if host is None:
        try:
            host = socket.gethostname()
        except OSError as exc:
            raise IdentityError(f"Unable to get hostname: {exc}") from exc
    if not host:
        raise IdentityError("Unable to get hostname: empty host name")
    return ClientIdentity(base_name=f"{prefix}-{host}", suffix=suffix or "")


def build_session_policy(
    has_suffix: bool, session_expiry: int = Mqtt2FileConfig.SESSION_EXPIRY
) -> SessionPolicy:
    """Clean session without a suffix, persistent session with one."""
    if has_suffix:
        return SessionPolicy(persistent=True, session_expiry=session_expiry)
    return SessionPolicy(persistent=False, session_expiry=0)
