from __future__ import annotations

import importlib
import re

ulid_module = importlib.import_module("ulid")

ORDER_ID_PATTERN = r"^ord_[0-9A-HJKMNP-TV-Z]{26}$"
_ORDER_ID_RE = re.compile(ORDER_ID_PATTERN)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{ulid_module.new().str}"


def new_order_id() -> str:
    return _new_id("ord")


def new_quiz_id() -> str:
    return _new_id("quiz")


def new_job_id() -> str:
    return _new_id("job")


def new_approval_id() -> str:
    return _new_id("apr")


def new_song_id() -> str:
    return _new_id("song")


def new_retry_item_id() -> str:
    return _new_id("rq")


def new_log_id() -> str:
    return _new_id("log")


def is_order_id(value: object) -> bool:
    return isinstance(value, str) and _ORDER_ID_RE.match(value) is not None
