"""
Validation of the JSON body accepted by the relay endpoint.
"""

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any

from soap_relay.utils.errors import InvalidRequest

REQUIRED_FIELDS = ('url', 'envelope', 'pfxBase64')
OPTIONAL_FIELDS = ('soapAction', 'pfxPassword')


@dataclass(frozen=True)
class RelayRequest:
    url: str
    envelope: str
    pfx_bytes: bytes = field(repr=False)
    soap_action: str = ''
    pfx_password: str = field(default='', repr=False)


def parse_relay_request(data: Any) -> RelayRequest:
    """
    Validate a decoded JSON body and build a RelayRequest from it.

    ``url``, ``envelope`` and ``pfxBase64`` are required non-empty strings;
    ``soapAction`` and ``pfxPassword`` default to empty strings. Whitespace
    inside ``pfxBase64`` (line-wrapped base64) is ignored.

    Raises:
        InvalidRequest: If the body is not an object, a required field is
            missing, a field is not a string or pfxBase64 is not base64.
    """
    if not isinstance(data, dict):
        raise InvalidRequest("Request body must be a JSON object")

    missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
    if missing:
        raise InvalidRequest(f"Missing required fields: {', '.join(REQUIRED_FIELDS)}")

    for name in REQUIRED_FIELDS + OPTIONAL_FIELDS:
        value = data.get(name)
        if value is not None and not isinstance(value, str):
            raise InvalidRequest(f"Field '{name}' must be a string")

    try:
        pfx_bytes = base64.b64decode(''.join(data['pfxBase64'].split()), validate=True)
    except (binascii.Error, ValueError):
        raise InvalidRequest("Field 'pfxBase64' is not valid base64")
    if not pfx_bytes:
        raise InvalidRequest("Field 'pfxBase64' decodes to an empty bundle")

    return RelayRequest(
        url=data['url'],
        envelope=data['envelope'],
        pfx_bytes=pfx_bytes,
        soap_action=data.get('soapAction') or '',
        pfx_password=data.get('pfxPassword') or '',
    )
