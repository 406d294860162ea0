from __future__ import annotations


class DigitalPeopleError(RuntimeError):
    pass


class StageError(DigitalPeopleError):
    """A pipeline stage failed; the message is the user-visible task error."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage
        self.message = message


class UpstreamError(DigitalPeopleError):
    """Transport-level failure talking to the TTS or video-synthesis service."""


class QueueError(DigitalPeopleError):
    pass


class TemplateNotFound(DigitalPeopleError):
    pass


class RetryRejected(DigitalPeopleError):
    pass


class TaskNotFound(DigitalPeopleError):
    pass


class StoreUnavailable(DigitalPeopleError):
    pass
