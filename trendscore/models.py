from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from typing import Annotated, List, Literal, Optional, Union
from datetime import datetime
from enum import Enum


class ProductStatus(str, Enum):
    """Publication workflow state of a product"""
    DRAFT = "DRAFT"
    FLAGGED = "FLAGGED"
    PUBLISHED = "PUBLISHED"


class SignalSource(str, Enum):
    """Origin system of a trend signal"""
    AMAZON_MOVERS = "amazon_movers"
    REDDIT_SKINCARE = "reddit_skincare"
    GOOGLE_TRENDS = "google_trends"


class AmazonMoversMetadata(BaseModel):
    """Payload from the Movers & Shakers sales-rank scraper"""
    source: Literal["amazon_movers"] = "amazon_movers"
    sales_jump_percent: Optional[float] = None
    rank: Optional[int] = None
    category: Optional[str] = None
    asin: Optional[str] = None


class RedditMetadata(BaseModel):
    """Payload from the social-discussion scraper"""
    source: Literal["reddit_skincare"] = "reddit_skincare"
    upvotes: Optional[int] = None
    comments: Optional[int] = None
    subreddit: Optional[str] = None
    permalink: Optional[str] = None


class GoogleTrendsMetadata(BaseModel):
    """Payload from the search-trend collector"""
    source: Literal["google_trends"] = "google_trends"
    interest_index: Optional[float] = None
    velocity: Optional[float] = None
    geo: Optional[str] = None


SignalMetadata = Annotated[
    Union[AmazonMoversMetadata, RedditMetadata, GoogleTrendsMetadata],
    Field(discriminator="source"),
]


class _SourceTaggedModel(BaseModel):
    """Fills the metadata discriminator from the record's own source"""

    @model_validator(mode="before")
    @classmethod
    def tag_metadata(cls, data):
        if isinstance(data, dict):
            metadata = data.get('metadata')
            source = data.get('source')
            if isinstance(metadata, dict) and 'source' not in metadata and source is not None:
                data = {**data, 'metadata': {**metadata, 'source': getattr(source, 'value', source)}}
        return data

    @model_validator(mode="after")
    def metadata_matches_source(self):
        if self.metadata is not None and self.metadata.source != self.source.value:
            raise ValueError(
                f"metadata for '{self.metadata.source}' attached to a '{self.source.value}' signal"
            )
        return self


class TrendSignal(_SourceTaggedModel):
    """One observation from one source at one point in time"""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    product_id: str
    source: SignalSource
    value: float = 0
    metadata: Optional[SignalMetadata] = None
    detected_at: datetime


class SignalInput(_SourceTaggedModel):
    """Record handed over by a scraper; creates the product when product_id is absent"""
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = None
    image_url: Optional[str] = None
    amazon_url: Optional[str] = None
    source: SignalSource
    value: float = 0
    metadata: Optional[SignalMetadata] = None
    detected_at: datetime

    @model_validator(mode="after")
    def needs_owner(self):
        if not self.product_id and not (self.product_name and self.product_name.strip()):
            raise ValueError("either product_id or product_name is required")
        return self


class Review(BaseModel):
    """A single marketplace review"""
    id: Optional[str] = None
    product_id: str
    rating: float = Field(ge=1, le=5)
    content: str = ""
    author: Optional[str] = None
    verified: bool = False
    helpful: int = 0
    date: Optional[datetime] = None


class ProductContent(BaseModel):
    """Editorial copy owned by the content subsystem"""
    id: Optional[str] = None
    product_id: str
    slug: str
    body: str = ""


class Product(BaseModel):
    """Candidate real-world product with its scoring and lifecycle state"""
    id: Optional[str] = None
    name: str
    brand: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = None
    image_url: Optional[str] = None
    amazon_url: Optional[str] = None
    star_rating: Optional[float] = None
    review_count: Optional[int] = None
    recent_review_count: Optional[int] = None
    trend_score: float = Field(default=0, ge=0, le=100)
    current_score: float = Field(default=0, ge=0, le=100)
    base_score: float = Field(default=0, ge=0, le=100)
    peak_score: float = Field(default=0, ge=0, le=100)
    days_trending: int = 0
    status: ProductStatus = ProductStatus.DRAFT
    first_detected: Optional[datetime] = None
    published_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None


class ProductScoreHistory(BaseModel):
    """Score snapshot used for sparklines"""
    id: Optional[str] = None
    product_id: str
    current_score: float
    base_score: Optional[float] = None
    recorded_at: datetime


class ScoreBreakdown(BaseModel):
    """Per-source components of a composite trend score"""
    amazon: int = 0
    reddit: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return self.amazon + self.reddit


class ProductScoreView(BaseModel):
    """Score output handed to admin and catalog consumers"""
    product_id: str
    current_score: float
    trend_score: float
    status: ProductStatus
    days_trending: int
    sparkline: List[float] = []


class MatchCandidate(BaseModel):
    """Best fuzzy match for a product within a candidate pool"""
    product_id: str
    name: str
    score: float


class MergeResult(BaseModel):
    """Outcome of consolidating a duplicate into a canonical product"""
    success: bool
    status: Literal["merged", "invalid", "not_found", "failed"]
    message: str
    duplicate_id: Optional[str] = None
    target_id: Optional[str] = None
    signals_transferred: int = 0
    reviews_transferred: int = 0
    requires_attention: bool = False


class BatchItemError(BaseModel):
    """A single failed item inside a batch run"""
    product_id: Optional[str] = None
    error: str


class BatchReport(BaseModel):
    """Summary of a recalculation run"""
    updated: int = 0
    recalculated: int = 0
    errors: List[BatchItemError] = []
    history_pruned: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class MatchPassReport(BaseModel):
    """Summary of an automated duplicate-matching pass"""
    checked: int = 0
    merged: int = 0
    merges: List[MergeResult] = []
    failures: List[MergeResult] = []
