"""
Pipeline error taxonomy.

    PipelineError
    ├── InputError        missing/corrupt file, unsupported type (never auto-retried)
    ├── TransientError    OCR timeout, provider or network failure (retried with backoff)
    │   └── CircuitOpenError
    ├── RecognitionError  OCR produced no viable text
    ├── NotFoundError     application, job posting or result does not exist
    └── InvalidStateError illegal screening state transition
"""


class PipelineError(Exception):
    """Base class for document pipeline errors."""


class InputError(PipelineError):
    pass


class TransientError(PipelineError):
    pass


class CircuitOpenError(TransientError):
    pass


class RecognitionError(PipelineError):
    pass


class NotFoundError(PipelineError):
    pass


class InvalidStateError(PipelineError):
    pass
