"""Request and response shapes for the job API."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from urllib.parse import urlparse

from fastapi.exceptions import RequestValidationError
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from marketing_gateway.models import Job, JobKind, JobStatus

AD_CHANNELS = ("Google", "Linkedin", "Email", "Reddit", "Twitter", "Facebook")
_CHANNEL = "(" + "|".join(AD_CHANNELS) + ")"
CHANNELS_PATTERN = rf"^{_CHANNEL}(,\s*{_CHANNEL})*$"


def _http_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("must be an http(s) URL")
    return value


def _optional_http_url(value: str) -> str:
    return _http_url(value) if value else value


HttpUrlStr = Annotated[str, AfterValidator(_http_url)]


class AdCopyInputs(BaseModel):
    campaign_name: str = Field(min_length=1)
    input_channels: str = Field(pattern=CHANNELS_PATTERN)
    input_content_types: str = ""
    landing_page_content: str = Field(min_length=1)
    landing_page_url: HttpUrlStr
    asset_link: Annotated[str, AfterValidator(_optional_http_url)] = ""
    content_material: str = ""
    additional_information: str = ""
    keywords: str = ""
    internal_knowledge: str = ""
    tone_and_language: str = ""


class AudienceInputs(BaseModel):
    website_url: HttpUrlStr
    business_persona: str = Field(min_length=1)
    job_functions: List[str] = Field(min_length=1)


class AdCopySubmission(BaseModel):
    kind: Literal["adcopy"]
    job_id: Optional[str] = None
    inputs: AdCopyInputs

    @property
    def title(self) -> str:
        return self.inputs.campaign_name


class AudienceSubmission(BaseModel):
    kind: Literal["audience"]
    job_id: Optional[str] = None
    inputs: AudienceInputs

    @property
    def title(self) -> str:
        return self.inputs.website_url


class WorkflowSubmission(BaseModel):
    kind: Literal["workflow"]
    job_id: Optional[str] = None
    title: Optional[str] = None
    inputs: Dict[str, Any] = Field(default_factory=dict)


class ConversationInputs(BaseModel):
    message: str = Field(min_length=1)


class ConversationSubmission(BaseModel):
    kind: Literal["conversation"]
    job_id: Optional[str] = None
    title: Optional[str] = None
    inputs: ConversationInputs


JobSubmission = Annotated[
    Union[AdCopySubmission, AudienceSubmission, WorkflowSubmission, ConversationSubmission],
    Field(discriminator="kind"),
]


class JobAccepted(BaseModel):
    job_id: str
    status: JobStatus
    poll_interval_seconds: int


class JobResult(BaseModel):
    job_id: str
    status: Optional[JobStatus] = None  # as stored once the run settled
    run_id: Optional[str] = None
    result: Dict[str, Any]


class JobUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1)
    result: Optional[Dict[str, Any]] = None


class JobView(BaseModel):
    job_id: str
    kind: JobKind
    title: Optional[str] = None
    status: JobStatus
    payload: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    run_id: Optional[str] = None
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime
    last_activity: datetime

    @classmethod
    def from_job(cls, job: Job) -> "JobView":
        return cls(
            job_id=job.id,
            kind=job.kind,
            title=job.title,
            status=job.status,
            payload=job.payload or {},
            result=job.result,
            error=job.error,
            run_id=job.run_id,
            messages=job.messages or [],
            created_at=job.created_at,
            last_activity=job.last_activity,
        )


_submission_adapter = TypeAdapter(JobSubmission)


Submission = Union[AdCopySubmission, AudienceSubmission, WorkflowSubmission, ConversationSubmission]


def parse_submission(payload: Any) -> Submission:
    """Validate a raw body; failures surface as a regular request validation error."""
    try:
        return _submission_adapter.validate_python(payload)
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False)) from e
