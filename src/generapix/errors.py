"""Exception hierarchy for the generation engine.

Row pipelines catch ``GenerationError`` subclasses and turn them into a
failed row outcome; nothing here is meant to cross a chunk boundary.
"""


class GenerationError(Exception):
    """Base class for upstream AI failures on a single row."""


class AssistantTimeoutError(GenerationError):
    """The assistant run did not reach a terminal state within the allowed number of polls."""

    def __init__(self, run_id: str, attempts: int, last_status: str | None = None) -> None:
        self.run_id = run_id
        self.attempts = attempts
        self.last_status = last_status
        super().__init__(
            f"Assistant run {run_id} timed out after {attempts} polls "
            f"(last status: {last_status or 'unknown'})"
        )


class AssistantRunError(GenerationError):
    """The assistant run finished in a non-completed state (failed, cancelled, expired...)."""

    def __init__(self, run_id: str, status: str, detail: str | None = None) -> None:
        self.run_id = run_id
        self.status = status
        message = f"Assistant run {run_id} ended with status {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class EmptyAssistantResponseError(GenerationError):
    """The thread holds no assistant text to use as a prompt."""


class ImageGenerationError(GenerationError):
    """The image model returned no image payload."""


class RowValidationError(ValueError):
    """A spreadsheet row does not match the expected row schema."""

    def __init__(self, row_number: int, message: str) -> None:
        self.row_number = row_number
        super().__init__(f"Row {row_number}: {message}")
