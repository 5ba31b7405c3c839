class InconclusiveMatchError(Exception):
    """The given inputs are not enough to decide a condition or flag locally."""

    pass


class RequiresServerEvaluation(InconclusiveMatchError):
    """Raised when a condition depends on data only the server holds, e.g. a static cohort."""

    pass
