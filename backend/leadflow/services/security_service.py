# /leadflow/services/security_service.py

import hmac
import hashlib
import re
import logging
import secrets

# Signature checks for inbound webhooks and phone normalisation for contact
# correlation.

logger = logging.getLogger(__name__)

_JID_SUFFIX = re.compile(r"@(s\.whatsapp\.net|c\.us|lid|g\.us|broadcast)$", re.IGNORECASE)
MAX_E164_DIGITS = 15


class SecurityService:
    @staticmethod
    def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
        if not signature or not signature.startswith('sha256=') or not secret:
            return False
        expected_signature = hmac.new(secret.encode('utf-8'), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected_signature, signature[7:])

    @staticmethod
    def constant_time_equals(provided: str | None, expected: str | None) -> bool:
        if not provided or not expected:
            return False
        return secrets.compare_digest(provided, expected)


class EnhancedSecurityService(SecurityService):
    @staticmethod
    def normalize_phone(raw: str) -> str:
        """
        Reduces any WhatsApp JID or typed phone number to bare E.164 digits.

        - JID suffixes (@s.whatsapp.net, @c.us, @lid, @g.us, @broadcast) and
          ``:device`` parts are dropped
        - more than 15 digits is a linked-device id, not a phone: returns ""
        - 10-11 digits are Brazilian numbers without country code: 55 is prepended
        - 12 digits starting with 55 lack the mobile 9 after the area code: it is inserted
        """
        if not raw or not isinstance(raw, str):
            return ""

        phone = _JID_SUFFIX.sub("", raw.strip())
        phone = phone.split(":")[0]
        phone = re.sub(r"\D", "", phone)

        if len(phone) > MAX_E164_DIGITS:
            logger.warning(f"Discarding identifier that is too long to be a phone number: {phone[:6]}...")
            return ""

        if 10 <= len(phone) <= 11:
            phone = "55" + phone

        if phone.startswith("55") and len(phone) == 12:
            phone = f"{phone[:4]}9{phone[4:]}"

        return phone

