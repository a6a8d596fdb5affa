from typing import Any


def ok(data: Any = None) -> dict:
    """Standard success envelope."""
    return {"ok": True, "data": data, "error": None}


def error(code: str = "internal_error", message: str = "An internal error occurred") -> dict:
    """Standard error envelope (used by core/exception_handlers.py)."""
    return {"ok": False, "data": None, "error": {"code": code, "message": message}}
