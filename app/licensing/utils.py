from __future__ import annotations

import base64
import binascii
import hashlib
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from werkzeug.utils import secure_filename

from app.licensing.errors import ValidationError


def to_decimal(value: Any, field: str) -> Decimal:
    """Parse a numeric form/JSON value; raises ValidationError naming the field."""
    if isinstance(value, Decimal):
        return value
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field} is required.", details={"field": field})
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field} must be numeric.", details={"field": field}) from e
    if not d.is_finite():
        raise ValidationError(f"{field} must be a finite number.", details={"field": field})
    return d


def decode_signature(signature: bytes | str | None) -> bytes | None:
    """
    Accept raw image bytes or a canvas data URL ("data:image/png;base64,....").
    Returns None for an empty signature.
    """
    if signature is None:
        return None
    if isinstance(signature, bytes):
        return signature or None
    raw = signature.strip()
    if not raw:
        return None
    if raw.startswith("data:"):
        _, _, raw = raw.partition(",")
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Signature is not valid base64 image data.") from e


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def signature_storage_key(kind: str, entity_id: int, when: datetime | None = None) -> str:
    ts = (when or datetime.utcnow()).strftime("%Y%m%dT%H%M%S%f")
    return f"signatures/{kind}/{entity_id}_admin_{ts}.png"


def supporting_document_key(import_id: int, filename: str, when: datetime | None = None) -> str:
    ts = (when or datetime.utcnow()).strftime("%Y%m%dT%H%M%S%f")
    safe = secure_filename(filename or "") or "document.bin"
    return f"imports/{import_id}/{ts}_{safe}"


def technician_document_key(reference: str, filename: str, when: datetime | None = None) -> str:
    ts = (when or datetime.utcnow()).strftime("%Y%m%dT%H%M%S%f")
    safe = secure_filename(filename or "") or "document.bin"
    return f"technicians/{reference}/{ts}_{safe}"
