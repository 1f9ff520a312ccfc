from __future__ import annotations

from typing import Optional

import httpx

from gatekeeper.logging import get_logger

logger = get_logger(__name__)


class CaptchaVerifier:
    """reCAPTCHA ``siteverify`` client.

    ``verify`` returns a plain boolean; transport and parse failures count as
    a failed challenge.
    """

    def __init__(
        self,
        *,
        secret_key: Optional[str],
        verify_url: str = "https://www.google.com/recaptcha/api/siteverify",
        enabled: bool = True,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.secret_key = secret_key
        self.verify_url = verify_url
        self.enabled = enabled
        self.timeout = timeout
        self._transport = transport

    async def verify(self, token: str, remote_ip: Optional[str] = None) -> bool:
        if not token:
            return False
        if not self.enabled:
            return True
        if not self.secret_key:
            logger.error("captcha_not_configured")
            return False
        data = {"secret": self.secret_key, "response": token}
        if remote_ip:
            data["remoteip"] = remote_ip
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.post(self.verify_url, data=data)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("captcha_verify_http_error", status_code=exc.response.status_code)
            return False
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("captcha_verify_failed", error=str(exc))
            return False
        success = bool(payload.get("success")) if isinstance(payload, dict) else False
        if not success:
            codes = payload.get("error-codes") if isinstance(payload, dict) else None
            logger.info("captcha_rejected", error_codes=codes)
        return success
