"""Exception types shared by the scheduling and persistence layers."""


class StudyAssistantError(Exception):
    """Base class for errors raised by the study assistant core."""


class InvalidArgumentError(StudyAssistantError, ValueError):
    """Raised when a caller passes a value outside an operation's contract."""


class RecordNotFoundError(StudyAssistantError, LookupError):
    """Raised when a referenced record does not exist or belongs to someone else."""

    label = "Record"

    def __init__(self, record_id: int) -> None:
        super().__init__(f"{self.label} {record_id} was not found.")
        self.record_id = record_id


class FlashcardNotFoundError(RecordNotFoundError):
    label = "Flashcard"

    @property
    def card_id(self) -> int:
        return self.record_id


class QuestionNotFoundError(RecordNotFoundError):
    label = "Question"


class NoteNotFoundError(RecordNotFoundError):
    label = "Note"


class StudyPlanNotFoundError(RecordNotFoundError):
    label = "Study plan"


class StudyPlanTaskNotFoundError(StudyPlanNotFoundError):
    label = "Study plan task"
