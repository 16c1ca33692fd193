from __future__ import annotations

import re
from typing import Optional

from app.core.config import settings
from app.utils.error_handler import ValidationError

CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def clean_device_name(value: Optional[str], *, max_length: Optional[int] = None) -> str:
    """
    Normalize a user-supplied device display name.

    Control characters are removed and surrounding whitespace trimmed. The
    result must be non-empty and at most ``max_length`` characters.
    """
    max_length = max_length or settings.DEVICE_NAME_MAX_LENGTH
    if not isinstance(value, str):
        raise ValidationError("Device name is required")
    v = CONTROL_CHARS.sub("", value).strip()
    if not v:
        raise ValidationError("Device name is required")
    if len(v) > max_length:
        raise ValidationError(
            f"Device name must be at most {max_length} characters"
        )
    return v
