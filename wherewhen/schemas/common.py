import re
import uuid
from typing import Annotated

from pydantic import BeforeValidator

from wherewhen.errors import ErrorCode, fail

_IDENTIFIER_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


def parse_identifier(value: uuid.UUID | str) -> uuid.UUID:
    """Validate *value* as an 8-4-4-4-12 hex identifier.

    ``str()`` of the returned UUID is the canonical lowercase form.
    """
    if isinstance(value, uuid.UUID):
        return value
    if not isinstance(value, str) or not _IDENTIFIER_PATTERN.match(value):
        raise ValueError(f"Invalid identifier: {value!r}")
    return uuid.UUID(value)


def new_identifier() -> uuid.UUID:
    return uuid.uuid4()


def require_identifier(value: uuid.UUID | str, field: str) -> uuid.UUID:
    """Like :func:`parse_identifier` but fails with ``invalid_identifier``."""
    try:
        return parse_identifier(value)
    except ValueError:
        raise fail(
            ErrorCode.INVALID_IDENTIFIER,
            f"Invalid identifier for {field}",
            field=field,
            value=value,
        ) from None


Identifier = Annotated[uuid.UUID, BeforeValidator(parse_identifier)]
