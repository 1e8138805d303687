"""
Memory Mesh API

HTTP facade over Memory Mesh. Each scope (``X-Memory-Scope`` header)
gets its own store, aggregator, feedback collector, calibrator and team
sync, created on first use and flushed on shutdown.

This is a local request/response surface; it does not replicate state
between installations. Sharing happens through team exports.
"""

import logging
import os
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator

from memory_mesh import __version__, config
from memory_mesh.core.store import MemoryStore
from memory_mesh.feedback.calibrator import ConfidenceCalibrator
from memory_mesh.feedback.collector import FeedbackCollector, FeedbackKind
from memory_mesh.patterns.aggregator import PatternAggregator
from memory_mesh.patterns.types import ConsensusLevel
from memory_mesh.teams.sync import DEFAULT_MIN_CONFIDENCE, ConflictStrategy, TeamSync

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

ALLOWED_ORIGINS = os.environ.get("MEMORY_MESH_ALLOWED_ORIGINS", "http://localhost").split(",")
ENABLE_DOCS = os.environ.get("MEMORY_MESH_ENABLE_DOCS")

SCOPE_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


# =============================================================================
# Per-scope Services
# =============================================================================

@dataclass
class ScopeServices:
    """Everything one scope needs, sharing a single store."""
    store: MemoryStore
    aggregator: PatternAggregator
    feedback: FeedbackCollector
    calibrator: ConfidenceCalibrator
    sync: TeamSync

    def close(self) -> None:
        self.store.close()


_services: Dict[str, ScopeServices] = {}


def get_services_for_scope(scope: str) -> ScopeServices:
    """Get or create the service bundle for a scope."""
    if scope not in _services:
        scope_dir = config.get_scope_dir(scope)
        store = MemoryStore(data_dir=str(scope_dir / config.GLOBAL_SUBDIR), scope=scope)
        aggregator = PatternAggregator(store)
        _services[scope] = ScopeServices(
            store=store,
            aggregator=aggregator,
            feedback=FeedbackCollector(data_dir=str(scope_dir / config.FEEDBACK_SUBDIR)),
            calibrator=ConfidenceCalibrator(data_dir=str(scope_dir / config.CALIBRATION_SUBDIR)),
            sync=TeamSync(store, aggregator),
        )
        logger.info(f"Opened scope {scope} at {scope_dir}")
    return _services[scope]


def resolve_scope(x_memory_scope: Optional[str] = Header(None, alias="X-Memory-Scope")) -> ScopeServices:
    """Resolve the scope header (or the configured default) to its services."""
    scope = config.get_scope(x_memory_scope)
    if not SCOPE_RE.match(scope) or scope in (".", ".."):
        raise HTTPException(status_code=400, detail=f"Invalid scope name: {scope}")
    return get_services_for_scope(scope)


def close_all_services() -> None:
    for scope, services in list(_services.items()):
        try:
            services.close()
        except OSError as e:
            logger.error(f"Failed to flush scope {scope}: {e}")
    _services.clear()


def raise_for_result(result: Dict[str, Any]) -> Dict[str, Any]:
    """Map a ``success: False`` result to an HTTP error."""
    if result.get("success") is False:
        status = 404 if result.get("error_type") == "not_found" else 400
        raise HTTPException(status_code=status, detail=result)
    return result


# =============================================================================
# Lifespan
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown."""
    yield
    # Buffered store writes must reach disk before exit
    close_all_services()


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Memory Mesh API",
    description="Cross-project learning: patterns, consensus, feedback and calibrated confidence.",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if ENABLE_DOCS else None,
    redoc_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-Memory-Scope"],
)


# =============================================================================
# Request Models
# =============================================================================

class PatternRequest(BaseModel):
    type: str = Field(..., min_length=1, max_length=200, description="Pattern category")
    pattern: str = Field(..., min_length=1, max_length=2000, description="Observed value")
    confidence: Optional[float] = Field(default=None, description="Starting confidence (clamped to 0-1)")
    source: Optional[str] = Field(default=None, max_length=500, description="Project that observed it")
    override_confidence: bool = Field(default=False, description="Set confidence on an existing pattern")


class ExpertiseRequest(BaseModel):
    domain: str = Field(..., min_length=1, max_length=200)
    level: float = Field(..., description="Observed level (clamped to 0-1)")


class PreferenceRequest(BaseModel):
    key: str = Field(..., min_length=1, max_length=200)
    value: Any = None


class ProjectRequest(BaseModel):
    path: str = Field(..., min_length=1, max_length=1000)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProfileImportRequest(BaseModel):
    project_path: str = Field(..., min_length=1, max_length=1000)
    profile: Dict[str, Any] = Field(default_factory=dict)


class ProfileHintsRequest(BaseModel):
    profile: Dict[str, Any] = Field(default_factory=dict)


class SuggestionRequest(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    type: str = Field(..., min_length=1, max_length=200)
    text: str = Field(default="", max_length=5000)
    confidence: float = Field(default=0.5)
    context: Dict[str, Any] = Field(default_factory=dict)


class FeedbackRequest(BaseModel):
    kind: str = Field(..., description="accepted, rejected, modified or ignored")
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("kind")
    @classmethod
    def known_kind(cls, v):
        return FeedbackKind.parse(v).value


class QuickFeedbackRequest(SuggestionRequest):
    kind: str = Field(default=FeedbackKind.ACCEPTED.value)
    details: Dict[str, Any] = Field(default_factory=dict)


class ConfidenceRequest(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    type: str = Field(..., min_length=1, max_length=200)
    raw_confidence: float
    key: Optional[str] = Field(default=None, description="Calibration key (default category:type)")


class OutcomeRequest(BaseModel):
    key: str = Field(..., min_length=1, max_length=300)
    success: bool
    predicted_confidence: Optional[float] = None


class TeamExportRequest(BaseModel):
    team_name: str = Field(..., min_length=1, max_length=200)
    min_confidence: float = Field(default=DEFAULT_MIN_CONFIDENCE, ge=0.0, le=1.0)
    include_projects: bool = False
    include_expertise: bool = True
    include_preferences: bool = True
    consensus_only: bool = False


class TeamImportRequest(BaseModel):
    document: Dict[str, Any]
    strategy: ConflictStrategy = ConflictStrategy.MAJORITY


class TeamMergeRequest(BaseModel):
    documents: List[Dict[str, Any]]


class TeamValidateRequest(BaseModel):
    document: Dict[str, Any]


# =============================================================================
# Public Endpoints
# =============================================================================

@app.get("/")
async def root():
    """API status and discovery."""
    return {
        "service": "Memory Mesh API",
        "status": "operational",
        "version": __version__,
        "description": "Cross-project learning: patterns, consensus, feedback and calibrated confidence.",
        "endpoints": {
            "record_pattern": "POST /v1/patterns",
            "patterns": "GET /v1/patterns",
            "consensus": "GET /v1/patterns/consensus",
            "outliers": "GET /v1/patterns/outliers",
            "recommendations": "GET /v1/recommendations",
            "suggestions": "POST /v1/suggestions",
            "confidence": "POST /v1/confidence",
            "team_export": "POST /v1/team/export",
            "team_import": "POST /v1/team/import",
            "stats": "GET /v1/stats",
        },
        "scope": "Optional X-Memory-Scope header selects the scope",
    }


@app.get("/health")
async def health():
    """Health check."""
    return {"status": "healthy"}


# =============================================================================
# Memory Store Endpoints
# =============================================================================

@app.post("/v1/patterns")
async def record_pattern(request: PatternRequest, services: ScopeServices = Depends(resolve_scope)):
    """Record one observation of a (type, pattern) pair."""
    pattern = services.store.record_pattern(
        request.type,
        request.pattern,
        confidence=request.confidence,
        source=request.source,
        override_confidence=request.override_confidence,
    )
    return pattern.to_dict()


@app.get("/v1/patterns")
async def list_patterns(
    type: Optional[str] = None,
    min_confidence: float = 0.0,
    services: ScopeServices = Depends(resolve_scope),
):
    """Stored patterns, highest confidence first."""
    if type:
        patterns = services.store.get_patterns_by_type(type)
    else:
        patterns = services.store.get_confident_patterns(min_confidence)
    patterns = [p for p in patterns if p.confidence >= min_confidence]
    return {"count": len(patterns), "patterns": [p.to_dict() for p in patterns]}


@app.get("/v1/patterns/consensus")
async def consensus_patterns(level: ConsensusLevel = ConsensusLevel.MODERATE, services: ScopeServices = Depends(resolve_scope)):
    """Patterns shared by at least the level's share of projects."""
    patterns = services.aggregator.refresh().get_consensus_patterns(level)
    return {"level": level.value, "count": len(patterns), "patterns": [p.to_dict() for p in patterns]}


@app.get("/v1/patterns/outliers")
async def outlier_patterns(services: ScopeServices = Depends(resolve_scope)):
    """Patterns only one project uses."""
    patterns = services.aggregator.refresh().get_outlier_patterns()
    return {"count": len(patterns), "patterns": [p.to_dict() for p in patterns]}


@app.get("/v1/recommendations")
async def recommendations(min_confidence: float = 0.6, services: ScopeServices = Depends(resolve_scope)):
    """Recommended value per pattern type for a new project."""
    return services.aggregator.refresh().get_recommendations(min_confidence)


@app.post("/v1/expertise")
async def add_expertise(request: ExpertiseRequest, services: ScopeServices = Depends(resolve_scope)):
    expertise = services.store.add_expertise(request.domain, request.level)
    return {"domain": expertise.domain, **expertise.to_dict()}


@app.post("/v1/preferences")
async def set_preference(request: PreferenceRequest, services: ScopeServices = Depends(resolve_scope)):
    services.store.set_preference(request.key, request.value)
    return {"key": request.key, "value": request.value}


@app.post("/v1/projects")
async def register_project(request: ProjectRequest, services: ScopeServices = Depends(resolve_scope)):
    return services.store.register_project(request.path, request.metadata).to_dict()


@app.post("/v1/profile/import")
async def import_profile(request: ProfileImportRequest, services: ScopeServices = Depends(resolve_scope)):
    """Push a project profile's observations into global memory."""
    counts = services.store.import_from_profile(request.profile, request.project_path)
    return {"project_path": request.project_path, "imported": counts}


@app.post("/v1/profile/hints")
async def profile_hints(request: ProfileHintsRequest, services: ScopeServices = Depends(resolve_scope)):
    """Return the profile annotated with (non-authoritative) global hints."""
    return services.store.export_to_profile(request.profile)


# =============================================================================
# Feedback & Calibration Endpoints
# =============================================================================

@app.post("/v1/suggestions")
async def record_suggestion(request: SuggestionRequest, services: ScopeServices = Depends(resolve_scope)):
    suggestion_id = services.feedback.record_suggestion(
        request.category,
        request.type,
        text=request.text,
        confidence=request.confidence,
        context=request.context,
    )
    return {"id": suggestion_id}


@app.post("/v1/suggestions/{suggestion_id}/feedback")
async def record_feedback(
    suggestion_id: str,
    request: FeedbackRequest,
    services: ScopeServices = Depends(resolve_scope),
):
    """Resolve a pending suggestion."""
    if not services.feedback.record_feedback(suggestion_id, request.kind, request.details):
        raise HTTPException(status_code=404, detail=f"Unknown suggestion: {suggestion_id}")
    return {"id": suggestion_id, "kind": request.kind}


@app.post("/v1/feedback")
async def record_quick_feedback(request: QuickFeedbackRequest, services: ScopeServices = Depends(resolve_scope)):
    """Record a suggestion and its outcome in one call."""
    record_id = services.feedback.record_quick_feedback(
        request.category,
        request.type,
        kind=request.kind,
        text=request.text,
        confidence=request.confidence,
        context=request.context,
        details=request.details,
    )
    return {"id": record_id}


@app.post("/v1/confidence")
async def confidence(request: ConfidenceRequest, services: ScopeServices = Depends(resolve_scope)):
    """Confidence to display for a suggestion, adjusted by feedback and calibration."""
    key = request.key or f"{request.category}:{request.type}"
    return {
        "key": key,
        "raw": request.raw_confidence,
        "adjusted": services.feedback.adjust_confidence(request.category, request.type, request.raw_confidence),
        "calibrated": services.calibrator.get_calibrated_confidence(key, request.raw_confidence),
        "suppress": services.feedback.should_suppress(request.category, request.type),
    }


@app.post("/v1/calibration/outcomes")
async def record_outcome(request: OutcomeRequest, services: ScopeServices = Depends(resolve_scope)):
    services.calibrator.record_outcome(request.key, request.success, request.predicted_confidence)
    return services.calibrator.get_key_stats(request.key)


@app.get("/v1/calibration/{key}")
async def calibration_stats(key: str, services: ScopeServices = Depends(resolve_scope)):
    return services.calibrator.get_key_stats(key)


# =============================================================================
# Team Endpoints
# =============================================================================

@app.post("/v1/team/export")
async def team_export(request: TeamExportRequest, services: ScopeServices = Depends(resolve_scope)):
    if request.consensus_only:
        return services.sync.export_consensus_patterns(request.team_name)
    return services.sync.export_for_team(
        request.team_name,
        min_confidence=request.min_confidence,
        include_projects=request.include_projects,
        include_expertise=request.include_expertise,
        include_preferences=request.include_preferences,
    )


@app.post("/v1/team/import")
async def team_import(request: TeamImportRequest, services: ScopeServices = Depends(resolve_scope)):
    return raise_for_result(services.sync.import_from_team(request.document, request.strategy))


@app.post("/v1/team/merge")
async def team_merge(request: TeamMergeRequest, services: ScopeServices = Depends(resolve_scope)):
    return raise_for_result(services.sync.merge_team_exports(request.documents))


@app.post("/v1/team/validate")
async def team_validate(request: TeamValidateRequest, services: ScopeServices = Depends(resolve_scope)):
    return services.sync.validate_export(request.document)


# =============================================================================
# Stats
# =============================================================================

@app.get("/v1/stats")
async def get_stats(services: ScopeServices = Depends(resolve_scope)):
    return {
        "scope": services.store.scope,
        "store": services.store.get_stats(),
        "aggregator": services.aggregator.refresh().get_stats(),
        "feedback": services.feedback.get_stats(),
        "calibration": services.calibrator.get_stats(),
        "sync": services.sync.get_stats(),
    }


# =============================================================================
# Run with: uvicorn api.main:app --reload --port 8000
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
