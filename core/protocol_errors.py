"""
Error types for the Fluid Protocol model.

Every error is raised, never swallowed: the guarded entry points restore the
state of all wired components before the error reaches the caller, so an aborted
operation has no visible effect.
"""


class ProtocolError(ValueError):
    """Base class for all protocol-level failures."""


class ValidationError(ProtocolError):
    """Bad input or an operation on a trove/deposit in the wrong state."""


class AuthorizationError(ProtocolError):
    """The caller is not allowed to use a restricted entry point."""


class InvariantViolation(ProtocolError):
    """The operation would break an accounting invariant (e.g. nothing to liquidate)."""


class ReentrancyError(ProtocolError):
    """A guarded component was re-entered while an operation was in progress."""


class FixedPointError(ArithmeticError):
    """Base class for fixed-point arithmetic failures."""


class MathOverflowError(FixedPointError, OverflowError):
    """Result does not fit in an unsigned 256-bit integer."""


class MathUnderflowError(FixedPointError):
    """Result would be negative."""


class DivisionByZero(FixedPointError, ZeroDivisionError):
    """Divisor is zero."""
