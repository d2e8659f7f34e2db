"""
Insight Pipeline

Asynchronous analysis of free-text survey responses with interchangeable
LLM providers.

Components:
- JobQueue: durable priority queue (SQLite) with leased claims
- AnalysisWorker / WorkerPool: step pipeline per job with progress checkpoints
- ProviderGateway: retry, fallback and rate limiting over provider adapters
- CostGovernor: daily/monthly cost ledger and budget checks
- ResultCache: fingerprinted LRU+TTL cache of analysis payloads
- AnonymizationEngine: identifier masking and k-anonymity grouping
- ProgressNotifier: authorized per-job event streams
"""

__version__ = "0.3.0"

from .anonymization import AnonymizationEngine, AnonymizationReport
from .cache_store import ResultCache, compute_fingerprint
from .config import PipelineConfig, ProviderSettings, get_config
from .context import PipelineContext
from .cost import CostGovernor
from .gateway import ProviderGateway
from .job_queue import JobQueue
from .models import AnalysisOptions, AnalysisResult, AnalysisType, JobSpec, JobStatus, ResponseRecord
from .notifier import ProgressNotifier
from .service import AnalysisPipeline
from .worker import AnalysisWorker, WorkerPool

__all__ = [
    "AnalysisOptions",
    "AnalysisPipeline",
    "AnalysisResult",
    "AnalysisType",
    "AnalysisWorker",
    "AnonymizationEngine",
    "AnonymizationReport",
    "CostGovernor",
    "JobQueue",
    "JobSpec",
    "JobStatus",
    "PipelineConfig",
    "PipelineContext",
    "ProgressNotifier",
    "ProviderGateway",
    "ProviderSettings",
    "ResponseRecord",
    "ResultCache",
    "WorkerPool",
    "compute_fingerprint",
    "get_config",
]
