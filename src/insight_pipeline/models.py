"""
Data model for the analysis pipeline.

Contains:
- Enums: AnalysisType, JobStatus, AnonymizationLevel
- Job inputs: ResponseRecord, AnalysisOptions, JobSpec
- Job state: JobProgress, AnalysisJob
- Outputs: AnalysisResult
"""

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any


class AnalysisType(Enum):
    THEMATIC = "thematic"
    SENTIMENT = "sentiment"
    CLUSTERS = "clusters"
    CUSTOM = "custom"

    @classmethod
    def values(cls) -> list[str]:
        return [member.value for member in cls]


class JobStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class AnonymizationLevel(Enum):
    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"


@dataclass
class ResponseRecord:
    """A single free-text survey response."""
    text: str
    respondent_metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "respondent_metadata": self.respondent_metadata}

    @classmethod
    def from_any(cls, data: Any) -> "ResponseRecord":
        if isinstance(data, ResponseRecord):
            return data
        if isinstance(data, str):
            return cls(text=data)
        if isinstance(data, dict):
            return cls(
                text=data.get("text"),
                respondent_metadata=dict(
                    data.get("respondent_metadata") or data.get("respondentMetadata") or {}
                ),
            )
        raise TypeError(f"Cannot build a response from {type(data).__name__}")


PRIORITY_NAMES = {"low": 1, "medium": 5, "high": 10, "urgent": 20}

# Options that change what a provider produces; everything else only affects
# scheduling and is left out of cache fingerprints.
RESULT_AFFECTING_OPTIONS = (
    "language",
    "anonymization_level",
    "cultural_context",
    "custom_prompt",
    "batch_size",
    "k_anonymity",
)


@dataclass
class AnalysisOptions:
    """Per-job options."""

    language: str = "auto"
    anonymization_level: str = AnonymizationLevel.PARTIAL.value
    cultural_context: str | None = None
    provider: str | None = None
    fallback_provider: str | None = None
    cost_ceiling: float | None = None
    batch_size: int | None = None
    max_retries: int | None = None
    priority: int = 0
    custom_prompt: str | None = None
    k_anonymity: int | None = None
    partial_failure: bool = True
    timeout_seconds: float | None = None
    max_tokens: int = 2000
    temperature: float = 0.3

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def fingerprint_fields(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in RESULT_AFFECTING_OPTIONS}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AnalysisOptions":
        if not data:
            return cls()
        # Accept camelCase keys from the CRUD layer.
        aliases = {
            "anonymizationLevel": "anonymization_level",
            "culturalContext": "cultural_context",
            "fallbackProvider": "fallback_provider",
            "costCeiling": "cost_ceiling",
            "batchSize": "batch_size",
            "maxRetries": "max_retries",
            "customPrompt": "custom_prompt",
            "kAnonymity": "k_anonymity",
            "partialFailure": "partial_failure",
            "timeoutSeconds": "timeout_seconds",
            "maxTokens": "max_tokens",
        }
        known = set(cls.__dataclass_fields__)
        kwargs = {}
        for key, value in data.items():
            name = aliases.get(key, key)
            if name in known:
                kwargs[name] = value
        if isinstance(kwargs.get("priority"), str) and kwargs["priority"] in PRIORITY_NAMES:
            kwargs["priority"] = PRIORITY_NAMES[kwargs["priority"]]
        return cls(**kwargs)


@dataclass
class JobSpec:
    """Job submission record from the calling layer."""
    questionnaire_id: str
    analysis_type: str
    responses: list[ResponseRecord]
    options: AnalysisOptions = field(default_factory=AnalysisOptions)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobSpec":
        responses = data.get("responses")
        if responses is None:
            responses = []
        if not isinstance(responses, (list, tuple)):
            raise TypeError(f"responses must be a list, got {type(responses).__name__}")
        options = data.get("options")
        if options is not None and not isinstance(options, dict):
            raise TypeError(f"options must be an object, got {type(options).__name__}")
        return cls(
            questionnaire_id=data.get("questionnaire_id") or data.get("questionnaireId") or "",
            analysis_type=data.get("analysis_type") or data.get("analysisType") or "",
            responses=[ResponseRecord.from_any(r) for r in responses],
            options=AnalysisOptions.from_dict(options),
        )


@dataclass
class JobProgress:
    current_step: int = 0
    total_steps: int = 6
    percentage: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "percentage": self.percentage,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
        }


@dataclass
class AnalysisJob:
    """A job as stored by the queue."""

    job_id: str
    questionnaire_id: str
    analysis_type: AnalysisType
    responses: list[ResponseRecord]
    options: AnalysisOptions
    status: JobStatus = JobStatus.QUEUED
    progress: JobProgress = field(default_factory=JobProgress)
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    retry_count: int = 0
    error_code: str | None = None
    error_message: str | None = None
    worker_id: str | None = None

    def status_dict(self) -> dict[str, Any]:
        data = {
            "job_id": self.job_id,
            "status": self.status.value,
            "progress": self.progress.to_dict(),
        }
        if self.error_code:
            data["error_code"] = self.error_code
            data["error_message"] = self.error_message
        return data

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.status_dict(),
            "questionnaire_id": self.questionnaire_id,
            "analysis_type": self.analysis_type.value,
            "response_count": len(self.responses),
            "options": self.options.to_dict(),
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "retry_count": self.retry_count,
        }


@dataclass(frozen=True)
class AnalysisResult:
    """Immutable output of a completed job."""

    job_id: str
    analysis_type: AnalysisType
    payload: dict[str, Any]
    tokens_used: int = 0
    cost: float = 0.0
    provider: str | None = None
    from_cache: bool = False
    failures: tuple = ()
    anonymization: dict[str, Any] | None = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "analysis_type": self.analysis_type.value,
            "payload": self.payload,
            "tokens_used": self.tokens_used,
            "cost": self.cost,
            "provider": self.provider,
            "from_cache": self.from_cache,
            "failures": list(self.failures),
            "anonymization": self.anonymization,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalysisResult":
        return cls(
            job_id=data["job_id"],
            analysis_type=AnalysisType(data["analysis_type"]),
            payload=data["payload"],
            tokens_used=data.get("tokens_used", 0),
            cost=data.get("cost", 0.0),
            provider=data.get("provider"),
            from_cache=data.get("from_cache", False),
            failures=tuple(data.get("failures") or ()),
            anonymization=data.get("anonymization"),
            created_at=data.get("created_at", time.time()),
        )
