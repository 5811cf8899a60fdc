"""Exception and warning types raised by lfq_dropout."""


class InputError(ValueError):
    """Malformed intensity matrix or experimental design.

    Raised before any fitting starts: non-numeric cells, mismatched
    sample/design lengths, duplicated names or rows without a single
    observed value.
    """


class NumericalError(ArithmeticError):
    """Numerical breakdown inside a fit.

    Invalid distribution parameters, an underflow that no stable
    fallback covers, or too little data for a sub-fit. Aborts the
    current fit attempt.
    """


class NonConvergenceWarning(UserWarning):
    """The EM loop hit its iteration cap before reaching the tolerance."""
