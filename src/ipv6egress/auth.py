from __future__ import annotations

import base64
import binascii
from typing import Mapping, Optional

PROXY_AUTHENTICATE = 'Basic realm="ipv6egress"'


def check_auth(username: str, password: str, headers: Mapping[str, str]) -> bool:
    """
    Validate Basic proxy credentials.

    `headers` maps lower-cased header names to values. Auth is disabled when
    either configured credential is empty. Any malformed header counts as a
    failed check rather than an error.
    """
    if not username or not password:
        return True
    value: Optional[str] = headers.get("proxy-authorization")
    if not value:
        return False
    prefix = "Basic "
    if not value.startswith(prefix):
        return False
    try:
        decoded = base64.b64decode(value[len(prefix):], validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return False
    user, sep, pwd = decoded.partition(":")
    if not sep:
        return False
    return user == username and pwd == password
