"""HMAC-SHA256 signed agent credentials."""

import base64
import binascii
import hashlib
import hmac
import time

from handoff_hub.core.errors import Unauthorized


class AgentAuthenticator:
    """
    Issues and verifies agent tokens of the form
    ``<base64url(agent_id)>.<issued_at>.<hex signature>``.
    """
    
    def __init__(self, secret: str, ttl_seconds: int = 43200) -> None:
        if not secret:
            raise ValueError("agent token secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds
    
    def issue_token(self, agent_id: str, issued_at: int | None = None) -> str:
        encoded = base64.urlsafe_b64encode(agent_id.encode("utf-8")).decode("ascii")
        payload = f"{encoded}.{int(issued_at if issued_at is not None else time.time())}"
        return f"{payload}.{self._sign(payload)}"
    
    def verify(self, token: str | None) -> str:
        """Return the agent id the token was issued for.
        
        Raises:
            Unauthorized: missing, malformed, forged or expired token
        """
        if not token:
            raise Unauthorized("Missing agent credential")
        
        parts = token.split(".")
        if len(parts) != 3:
            raise Unauthorized("Malformed agent credential")
        encoded, issued_at, signature = parts
        
        expected = self._sign(f"{encoded}.{issued_at}").encode("ascii")
        if not hmac.compare_digest(expected, signature.encode("utf-8", "surrogatepass")):
            raise Unauthorized("Invalid agent credential")
        
        try:
            issued = int(issued_at)
            agent_id = base64.urlsafe_b64decode(encoded.encode("ascii")).decode("utf-8")
        except (ValueError, binascii.Error) as e:
            raise Unauthorized("Malformed agent credential") from e
        
        if time.time() - issued > self.ttl_seconds:
            raise Unauthorized("Agent credential expired")
        return agent_id
    
    def _sign(self, payload: str) -> str:
        return hmac.new(self._secret, payload.encode("utf-8", "surrogatepass"), hashlib.sha256).hexdigest()
