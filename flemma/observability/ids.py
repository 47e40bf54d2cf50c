from __future__ import annotations

import secrets


def new_conversation_id() -> str:
    return secrets.token_hex(12)


def new_request_id() -> str:
    return secrets.token_hex(16)
