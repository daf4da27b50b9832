from __future__ import annotations
from typing import Optional


class ControllerError(Exception):
    """Base for every failure that aborts a controller call."""

    def __init__(self, reason: str, meta: Optional[dict] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.meta = meta or {}


# -----------------------------
# Guards
# -----------------------------
class PreconditionNotMet(ControllerError):
    pass

class PostconditionNotMet(ControllerError):
    pass

class Unauthorized(ControllerError):
    pass


# -----------------------------
# Configuration
# -----------------------------
class ConfigurationError(ControllerError):
    pass

class ValueUnchanged(ConfigurationError):
    pass

class InvalidPair(ConfigurationError):
    pass

class InvalidBand(ConfigurationError):
    pass

class InvalidToken(ConfigurationError):
    pass


# -----------------------------
# Resources
# -----------------------------
class InsufficientFunds(ControllerError):
    pass

class LedgerError(ControllerError):
    pass

class InsufficientBalance(LedgerError):
    pass

class InsufficientLiquidity(LedgerError):
    pass
