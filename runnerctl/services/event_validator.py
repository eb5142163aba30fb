"""
Event Validator
===============
Authenticates and decodes a raw GitHub webhook delivery into a
LifecycleEvent.

Order of checks:
    1. Signature : HMAC of the raw body with the shared secret.
                    ``X-Hub-Signature-256`` (sha256) is preferred, the legacy
                    ``X-Hub-Signature`` (sha1) is accepted when it is the only
                    header present. Digests are compared with
                    hmac.compare_digest.
    2. Event kind: only ``workflow_job`` is acted upon.
    3. Body      : JSON, or form-encoded with a ``payload`` field.

Each failure raises a ValidationError subclass. The caller logs and discards;
nothing here has side effects beyond logging.
"""
import hashlib
import hmac
import json
import logging
from typing import Mapping
from urllib.parse import parse_qs

from pydantic import ValidationError as PydanticValidationError

from runnerctl.core.constants import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_256_HEADER,
    SIGNATURE_SHA1_HEADER,
    WORKFLOW_JOB_EVENT,
)
from runnerctl.core.errors import InvalidSignature, UnparseableBody, UnsupportedEventKind
from runnerctl.models.lifecycle_event import LifecycleEvent, WorkflowJobPayload

logger = logging.getLogger(__name__)

_DIGESTS = {
    "sha256": hashlib.sha256,
    "sha1": hashlib.sha1,
}

_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def _header(headers: Mapping[str, str], name: str) -> str:
    """Case-insensitive header lookup that also works on plain dicts."""
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
        return ""
    return value


def sign_payload(body: bytes, secret: str, algorithm: str = "sha256") -> str:
    """Return the signature header value GitHub would send for ``body``."""
    digest = hmac.new(secret.encode("utf-8"), body, _DIGESTS[algorithm]).hexdigest()
    return f"{algorithm}={digest}"


def verify_signature(body: bytes, headers: Mapping[str, str], secret: str) -> None:
    """
    Raise InvalidSignature unless ``body`` is signed with ``secret``.

    An empty secret disables verification (logged as a warning), the same
    behaviour GitHub's own SDKs have.
    """
    if not secret:
        logger.warning("No webhook secret configured, skipping signature verification")
        return

    signature = _header(headers, SIGNATURE_256_HEADER) or _header(headers, SIGNATURE_SHA1_HEADER)
    if not signature:
        raise InvalidSignature("missing signature header")

    algorithm, sep, received = signature.partition("=")
    if not sep or algorithm not in _DIGESTS or not received:
        raise InvalidSignature(f"malformed signature header: {algorithm or '<empty>'}")

    expected = sign_payload(body, secret, algorithm)
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
        raise InvalidSignature("signature mismatch")


def _decode_body(body: bytes, content_type: str) -> dict:
    try:
        if content_type.split(";")[0].strip().lower() == _FORM_CONTENT_TYPE:
            form = parse_qs(body.decode("utf-8"))
            if "payload" not in form:
                raise UnparseableBody("form body has no 'payload' field")
            raw = form["payload"][0]
        else:
            raw = body.decode("utf-8")
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise UnparseableBody(f"body is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise UnparseableBody("body is not a JSON object")
    return data


def validate_event(body: bytes, headers: Mapping[str, str], secret: str) -> LifecycleEvent:
    """
    Turn a signed webhook delivery into a LifecycleEvent.

    Parameters
    ----------
    body : bytes
        Raw request body, exactly as received (the signature covers it).
    headers : Mapping[str, str]
        Request headers.
    secret : str
        Shared webhook secret.

    Raises
    ------
    InvalidSignature, UnsupportedEventKind, UnparseableBody
    """
    verify_signature(body, headers, secret)

    kind = _header(headers, EVENT_HEADER)
    if kind != WORKFLOW_JOB_EVENT:
        raise UnsupportedEventKind(kind)

    data = _decode_body(body, _header(headers, "Content-Type"))
    try:
        payload = WorkflowJobPayload.model_validate(data)
    except PydanticValidationError as e:
        raise UnparseableBody(
            f"workflow_job payload rejected ({e.error_count()} error(s)): "
            + "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        ) from e

    event = LifecycleEvent.from_payload(payload, delivery_id=_header(headers, DELIVERY_HEADER))
    logger.debug(
        "Validated delivery %s | action=%s run=%s runner=%s",
        event.delivery_id or "-", event.action, event.run_id, event.runner_name or "-",
    )
    return event
