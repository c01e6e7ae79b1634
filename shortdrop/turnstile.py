import logging
from typing import Optional

import requests

SITEVERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
DEFAULT_TIMEOUT_SECONDS = 10

logger = logging.getLogger("shortdrop.turnstile")


def verify_token(
    token: Optional[str],
    secret: str,
    remote_ip: Optional[str] = None,
    *,
    timeout: int = DEFAULT_TIMEOUT_SECONDS,
) -> bool:
    """Ask Cloudflare Turnstile whether *token* is a passed challenge.

    Any transport or decoding failure counts as a failed verification.
    """

    if not token:
        return False

    form = {"secret": secret, "response": token}
    if remote_ip:
        form["remoteip"] = remote_ip

    try:
        response = requests.post(SITEVERIFY_URL, data=form, timeout=timeout)
        response.raise_for_status()
        result = response.json()
    except (requests.RequestException, ValueError) as error:
        logger.error("turnstile_verification_error error=%s", error)
        return False

    if not isinstance(result, dict) or result.get("success") is not True:
        logger.warning(
            "turnstile_verification_rejected codes=%s",
            result.get("error-codes") if isinstance(result, dict) else None,
        )
        return False
    return True
