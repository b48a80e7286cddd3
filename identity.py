"""Identity verification consulted once, at admission."""

import logging
from typing import Optional

import requests

import config
from errors import IdentityVerificationError
from notifications import create_retry_session

logger = logging.getLogger(__name__)


class IdentityVerifier:
    def __init__(self, url: Optional[str] = config.IDENTITY_VERIFICATION_URL,
                 session: Optional[requests.Session] = None,
                 timeout: float = config.HTTP_TIMEOUT_SECONDS):
        self.url = url
        self.session = session or create_retry_session()
        self.timeout = timeout

    def verify(self, name: str, email: str) -> bool:
        """
        Ask the verification endpoint to confirm an applicant.

        Returns True when verified (or when no endpoint is configured) and
        raises IdentityVerificationError otherwise, which blocks admission.
        """
        if not self.url:
            logger.info(f"Identity verification skipped for {email}: no endpoint configured")
            return True

        try:
            resp = self.session.post(self.url, json={"name": name, "email": email}, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Identity verification request failed for {email}: {str(e)}")
            raise IdentityVerificationError("Identity verification service unavailable") from e

        if not data.get("verified"):
            logger.warning(f"Identity verification rejected {email}: {data.get('reason')}")
            raise IdentityVerificationError(data.get("reason") or "Identity could not be verified", rejected=True)

        logger.info(f"Identity verified for {email}")
        return True
