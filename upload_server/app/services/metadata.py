import base64
import binascii
import re
from typing import Dict

from upload_server.app.services.errors import InvalidMetadataError

_KEY_PATTERN = re.compile(r'^[^\s,]+$')


def parse_metadata(raw: str) -> Dict[str, bytes]:
    """Decode Upload-Metadata text into a dict of raw values.

    The format is a comma separated list of ``key base64value`` pairs. A key may
    appear without a value, in which case it maps to an empty bytes object.

    Raises:
        InvalidMetadataError: if a pair is malformed, a key is repeated or a
            value is not valid base64.
    """
    result: Dict[str, bytes] = {}
    if not raw or not raw.strip():
        return result

    for pair in raw.split(","):
        parts = pair.strip().split(" ")
        if len(parts) > 2 or not parts[0]:
            raise InvalidMetadataError(f"Malformed metadata pair: '{pair}'")

        key = parts[0]
        if not _KEY_PATTERN.match(key):
            raise InvalidMetadataError(f"Invalid metadata key: '{key}'")
        if key in result:
            raise InvalidMetadataError(f"Duplicate metadata key: '{key}'")

        value = parts[1] if len(parts) == 2 else ""
        try:
            result[key] = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidMetadataError(f"Metadata value for '{key}' is not valid base64") from e

    return result
