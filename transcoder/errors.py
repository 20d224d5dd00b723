"""
Error types raised by the transcoding pipeline
"""


class TranscoderError(Exception):
    """Base class for every error raised by the transcoder app."""


class AlreadyInProgress(TranscoderError):
    def __init__(self, resource_id):
        self.resource_id = resource_id
        super().__init__(f"Encoding job already in progress for {resource_id}")


class JobNotFound(TranscoderError):
    def __init__(self, resource_id):
        self.resource_id = resource_id
        super().__init__(f"No encoding job found for {resource_id}")


class ObjectNotFound(TranscoderError):
    def __init__(self, key):
        self.key = key
        super().__init__(f"Object not found: {key}")


class StageError(TranscoderError):
    """A pipeline stage failed; the job cannot complete."""


class FetchError(StageError):
    pass


class EncodeError(StageError):
    def __init__(self, message, returncode=None, stderr=''):
        self.returncode = returncode
        self.stderr = stderr or ''
        super().__init__(message)


class PublishError(StageError):
    pass


class ManifestError(StageError):
    pass


class LogError(TranscoderError):
    """Progress could not be written to the remote log. Never fatal."""
