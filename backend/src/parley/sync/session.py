from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlencode, urlsplit, urlunsplit


@dataclass(frozen=True, slots=True)
class SessionContext:
    """Credentials and endpoints of one authenticated client session.

    Passed explicitly to every outbound call instead of living in a global.
    """

    base_url: str
    token: str
    user_id: int
    ws_url: str | None = None

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def websocket_url(self, path: str = "/ws/chat") -> str:
        if self.ws_url:
            base = self.ws_url
        else:
            parts = urlsplit(self.base_url)
            scheme = "wss" if parts.scheme == "https" else "ws"
            base = urlunsplit((scheme, parts.netloc, parts.path.rstrip("/") + path, "", ""))
        return f"{base}?{urlencode({'token': self.token})}"
