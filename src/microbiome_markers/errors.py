# microbiome_markers/errors.py
"""
Exceptions and warnings raised by the marker analysis pipeline.

UsageError and FitConvergenceError abort an invocation with no partial
output. EmptyResultWarning is emitted when nothing passes the significance
cutoff; the pipeline still returns the unfiltered table.
"""


class MarkerAnalysisError(Exception):
    """Base class for marker analysis failures."""


class UsageError(MarkerAnalysisError, ValueError):
    """Invalid arguments or an unsupported option combination."""


class FitConvergenceError(MarkerAnalysisError, RuntimeError):
    """A model fitting service failed on the supplied data."""

    ALTERNATIVE = {
        "ZILN": "ZIG",
        "ZIG": "ZILN",
    }

    def __init__(self, model, diagnostic):
        self.model = str(model)
        self.diagnostic = str(diagnostic)
        alternative = self.ALTERNATIVE.get(self.model)
        if alternative is not None:
            hint = f"Consider the {alternative} model or further filtering your dataset!"
        else:
            hint = "Consider further filtering your dataset!"
        super().__init__(
            f"{self.model} model failed to fit to your data: {self.diagnostic}. {hint}"
        )

    def __reduce__(self):
        # Worker processes send exceptions back pickled
        return (self.__class__, (self.model, self.diagnostic))


class EmptyResultWarning(UserWarning):
    """No feature passed the adjusted p-value cutoff."""
