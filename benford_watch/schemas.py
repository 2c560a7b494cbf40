from enum import Enum
from typing import List, Literal, Optional

from pydantic import Base64Bytes, BaseModel, Field, model_validator


class AnalysisMode(str, Enum):
    STRUCTURED = "structured"
    RAW = "raw"


class FitTest(str, Enum):
    CHI_SQUARED = "chi_squared"
    MAX_DEVIATION = "max_deviation"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class VerdictStatus(str, Enum):
    CONSISTENT = "consistent"
    ANOMALOUS = "anomalous"
    NO_DATA = "no_data"
    INELIGIBLE = "ineligible"


class IneligibleReason(str, Enum):
    INSUFFICIENT_SAMPLE = "insufficient_sample"
    INSUFFICIENT_SPREAD = "insufficient_spread"


class ComplianceVerdict(BaseModel):
    eligible: bool
    reason: Optional[IneligibleReason] = None
    sample_size: int = 0
    spread: Optional[float] = None


class BenfordVerdict(BaseModel):
    strategy: FitTest
    # chi-squared statistic, or the max deviation in percentage points
    statistic: float
    # p-value for chi-squared, max deviation for the deviation test
    p_value_or_deviation: float
    anomalous: bool
    threshold: float


class DigitRow(BaseModel):
    digit: int
    count: int
    percent: float
    expected_percent: float
    deviation: float


class ProgressEvent(BaseModel):
    run_id: int
    cursor: int
    total_tokens: int
    percentage: float = Field(ge=0, le=100)
    histogram: List[int]


class ResultEvent(BaseModel):
    run_id: int
    status: VerdictStatus
    mode: AnalysisMode
    verdict: Optional[BenfordVerdict] = None
    compliance: Optional[ComplianceVerdict] = None
    histogram: List[int]
    total_valid: int
    invalid_count: int
    message: str
    table: List[DigitRow] = []


# API bodies

class TextAnalysisRequest(BaseModel):
    text: str
    mode: AnalysisMode = AnalysisMode.STRUCTURED
    strategy: Optional[FitTest] = None


class CoefficientAnalysisRequest(BaseModel):
    values: List[float]
    strategy: Optional[FitTest] = None


class UrlAnalysisRequest(BaseModel):
    url: str
    mode: AnalysisMode = AnalysisMode.STRUCTURED
    strategy: Optional[FitTest] = None


class SocketSubmission(BaseModel):
    """
    One websocket message. ``kind`` names the source; the matching field
    carries its payload (``image`` is base64 encoded).
    """

    kind: Literal["text", "url", "coefficients", "image"] = "text"
    text: Optional[str] = None
    url: Optional[str] = None
    values: Optional[List[float]] = None
    image: Optional[Base64Bytes] = None
    filename: str = "upload.png"
    mode: AnalysisMode = AnalysisMode.STRUCTURED
    strategy: Optional[FitTest] = None

    @model_validator(mode="after")
    def check_payload(self):
        field = "values" if self.kind == "coefficients" else self.kind
        if getattr(self, field) is None:
            raise ValueError(f"'{field}' is required for {self.kind} submissions")
        return self


class AnalysisResponse(BaseModel):
    result: ResultEvent
    progress_events: int
