"""Pydantic schemas for API request/response models."""

from datetime import datetime

from pydantic import BaseModel, Field

# --- Decks ---


class DeckCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    deck_type: str = "normal"  # normal, audio
    algorithm: str | None = None  # fsrs, sm2; defaults by deck type


class DeckResponse(BaseModel):
    id: int
    name: str
    description: str | None
    deck_type: str
    algorithm: str
    status: str
    task_id: str | None

    model_config = {"from_attributes": True}


class DeckStatsResponse(BaseModel):
    """Card counts for one user's view of a deck."""

    deck_id: int
    new_cards: int
    due_cards: int
    total_review_cards: int
    total_cards: int


class SchedulerConfig(BaseModel):
    """Scheduler parameters for a user's deck; omitted fields use defaults."""

    requested_retention: float | None = None
    maximum_interval: int | None = None
    weights: list[float] | None = None
    enable_fuzz: bool | None = None
    enable_short_term: bool | None = None
    learning_steps: list[str | float] | None = None
    relearning_steps: list[str | float] | None = None


# --- Review ---


class CardResponse(BaseModel):
    """A card ready to be shown, with its memory state."""

    user_card_id: int
    card_id: int
    front: str
    back: str
    content_type: str
    state: int
    due: datetime
    stability: float
    difficulty: float
    reps: int
    lapses: int


class NextCardResponse(BaseModel):
    """``card`` is null when nothing is available; ``empty_deck`` tells the two cases apart."""

    card: CardResponse | None = None
    empty_deck: bool = False


class GradeRequest(BaseModel):
    grade: int  # 0=Again, 1=Hard, 2=Good, 3=Easy


class GradeResponse(BaseModel):
    user_card_id: int
    grade: int
    algorithm: str
    state: int
    due: datetime
    interval_seconds: float
    stability: float
    difficulty: float
    reps: int
    lapses: int


class PreviewOption(BaseModel):
    grade: int
    state: int
    due: datetime
    interval_seconds: float


class SuspendResponse(BaseModel):
    user_card_id: int
    suspended: bool


# --- Imports ---


class TemplateSampleResponse(BaseModel):
    front: str
    back: str


class TemplateSummaryResponse(BaseModel):
    name: str
    question_format: str
    answer_format: str
    fields: list[str]
    card_count: int
    samples: list[TemplateSampleResponse]


class ParseResponse(BaseModel):
    """Result of uploading an archive for template selection."""

    task_id: str
    total_notes: int
    total_cards: int
    media_count: int
    templates: list[TemplateSummaryResponse]


class TemplateSelectionRequest(BaseModel):
    name: str
    question_format: str = ""
    answer_format: str = ""


class ProcessTemplatesRequest(BaseModel):
    task_id: str
    deck_name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    deck_type: str = "normal"
    templates: list[TemplateSelectionRequest]


class ImportStatusResponse(BaseModel):
    task_id: str
    status: str
    progress: int
    message: str
    deck_id: int | None
    total_cards: int
    imported: int
    retryable: bool
    error: str | None = None


# --- Chat ---


class ChatRequest(BaseModel):
    user_card_id: int
    question: str = Field(min_length=1)


class ChatMessageResponse(BaseModel):
    id: int
    role: str
    content: str
    created_at: datetime

    model_config = {"from_attributes": True}
