"""Error taxonomy for the processing pipeline.

Every failure that can end a job is a :class:`LevelMixError`.  The
``retryable`` flag tells the scheduler whether running the whole job again
has a chance of succeeding (timeouts, contention and transfer problems) or
whether the input itself is at fault.
"""


class LevelMixError(Exception):
    retryable = False


class InvalidTask(LevelMixError):
    pass


class InvalidTarget(LevelMixError):
    pass


class InputNotFound(LevelMixError, FileNotFoundError):
    pass


class AnalysisFailed(LevelMixError):
    pass


class InsufficientSamples(AnalysisFailed):
    pass


class NormalizationFailed(LevelMixError):
    def __init__(self, message: str, diagnostics: str = ""):
        super().__init__(message)
        self.diagnostics = diagnostics


class DownloadFailed(LevelMixError):
    retryable = True


class UploadFailed(LevelMixError):
    retryable = True


class ProcessingTimeout(LevelMixError):
    """Base for every timeout so callers can tell them from content errors."""

    retryable = True


class AnalysisTimeout(ProcessingTimeout):
    pass


class ResourceTimeout(ProcessingTimeout):
    pass


class NormalizationTimeout(ProcessingTimeout):
    pass


class JobTimeout(ProcessingTimeout):
    pass


class PanicRecovered(LevelMixError):
    pass


class InvalidTransition(LevelMixError):
    pass


class JobCancelled(LevelMixError):
    pass


class RetryRequested(LevelMixError):
    """Raised by the orchestrator when a non-final attempt should be retried."""

    retryable = True

    def __init__(self, cause: LevelMixError):
        super().__init__(str(cause))
        self.cause = cause
