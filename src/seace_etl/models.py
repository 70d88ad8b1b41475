"""Pydantic models for the SEACE enrichment backend."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OperationKind(str, Enum):
    """The fixed set of background job kinds."""
    SCRAPE = "scrape"
    CATEGORIZE = "categorize"
    INFER_LOCATION = "infer_location"


class OperationStatus(str, Enum):
    """Lifecycle state of an operation."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.COMPLETED, OperationStatus.FAILED)


class ErrorType(str, Enum):
    """Failure classes surfaced to clients with a remediation hint."""
    CREDENTIALS_EXHAUSTED = "credentials_exhausted"
    FAILOVER_EXHAUSTED = "failover_exhausted"
    NETWORK = "network"
    STALE = "stale"
    INTERNAL = "internal"


class Confidence(str, Enum):
    """Confidence level reported for a location guess."""
    HIGH = "Alto"
    MEDIUM = "Medio"
    LOW = "Bajo"


class Counts(BaseModel):
    inserted: int = 0
    updated: int = 0
    errors: int = 0


class OperationMessage(BaseModel):
    """One narration line in an operation's message log."""
    timestamp: str
    text: str
    credential_alias: Optional[str] = None


class OperationDetails(BaseModel):
    """Counters every kind reports on completion."""
    model_config = ConfigDict(populate_by_name=True)

    inserted: int = 0
    updated: int = 0
    errors: int = 0
    process_count: int = 0
    duration_ms: int = 0


class ProcessSummary(BaseModel):
    id_proceso: str
    entidad: Optional[str] = None
    error: Optional[str] = None


class ScrapeDetails(OperationDetails):
    kind: Literal["scrape"] = "scrape"
    total_found: int = 0
    skipped: int = 0
    inserted_processes: List[ProcessSummary] = Field(default_factory=list)
    updated_processes: List[ProcessSummary] = Field(default_factory=list)
    error_processes: List[ProcessSummary] = Field(default_factory=list)
    export_files: List[str] = Field(default_factory=list)


class CategorizeDetails(OperationDetails):
    kind: Literal["categorize"] = "categorize"
    category_distribution: Dict[str, int] = Field(default_factory=dict, alias="distribucionCategorias")
    category_percentages: Dict[str, int] = Field(default_factory=dict, alias="porcentajes")
    used_ai: int = Field(0, alias="usaronIA")
    used_keywords: int = Field(0, alias="usaronKeywords")
    total_uncategorized: int = Field(0, alias="totalSinCategorizar")
    method: str = Field("ia_con_fallback_keywords", alias="metodo")


class KnowledgeBaseSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    districts: int = Field(0, alias="distritos")
    provinces: int = Field(0, alias="provincias")
    conflicts: int = Field(0, alias="conflictos")


class AICallSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pass_one: int = Field(0, alias="fase1")
    pass_two: int = Field(0, alias="fase2")


class LocationDetails(OperationDetails):
    kind: Literal["infer_location"] = "infer_location"
    used_ai: int = Field(0, alias="usaronIA")
    used_fallback: int = Field(0, alias="usaronFallback")
    updated_existing: int = Field(0, alias="actualizados")
    improved: int = Field(0, alias="mejorados")
    completed_from_kb: int = Field(0, alias="completadosConBase")
    completed_with_ai: int = Field(0, alias="completadosConIA")
    total_pending: int = Field(0, alias="totalPendientes")
    kb_completion_percentage: int = Field(0, alias="porcentajeConBase")
    improved_percentage: int = Field(0, alias="porcentajeMejorados")
    knowledge_base: KnowledgeBaseSummary = Field(default_factory=KnowledgeBaseSummary, alias="baseConocimiento")
    ai_calls: AICallSummary = Field(default_factory=AICallSummary, alias="llamadasIA")


AnyDetails = Annotated[
    Union[ScrapeDetails, CategorizeDetails, LocationDetails],
    Field(discriminator="kind"),
]


class Operation(BaseModel):
    """Snapshot of one background job. Stored instances are never mutated."""
    operation_id: str
    kind: OperationKind
    status: OperationStatus = OperationStatus.PENDING
    step_current: int = 0
    step_total: int = 0
    percentage: int = 0
    current_message: str = ""
    credential_alias: Optional[str] = None
    counts: Counts = Field(default_factory=Counts)
    details: Optional[AnyDetails] = None
    search_params: Dict[str, Any] = Field(default_factory=dict)
    messages: List[OperationMessage] = Field(default_factory=list)
    error_type: Optional[ErrorType] = None
    error_message: Optional[str] = None
    created_at: str
    started_at: Optional[str] = None
    updated_at: str
    finished_at: Optional[str] = None
    duration_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class OperationPage(BaseModel):
    items: List[Operation]
    total: int
    page: int
    size: int
    pages: int


class OperationStats(BaseModel):
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    avg_duration_ms: int = 0
    by_kind: Dict[str, int] = Field(default_factory=dict)


# Job parameters


def _current_year() -> str:
    return str(datetime.now().year)


class ScrapeParams(BaseModel):
    """Search parameters for a SEACE scrape run."""
    model_config = ConfigDict(extra="forbid")

    keywords: List[str] = Field(default_factory=list)
    anio: str = Field(default_factory=_current_year, pattern=r"^\d{4}$")
    max_processes: int = Field(100, ge=1, le=5000)
    objeto_contratacion: Optional[str] = None
    departamento: Optional[str] = None
    estado_proceso: Optional[str] = None
    entidad: Optional[str] = None
    tipo_proceso: Optional[str] = None
    fecha_desde: Optional[str] = None
    fecha_hasta: Optional[str] = None

    @field_validator("keywords", mode="before")
    @classmethod
    def split_keywords(cls, v):
        """Accept a comma separated string as well as a list."""
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v


class CategorizeParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    limit: Optional[int] = Field(None, ge=1)


class LocationParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    limit: Optional[int] = Field(None, ge=1)
    complete_with_ai: bool = True


# Credentials


class CredentialUsageEntry(BaseModel):
    """One entry of a credential's bounded usage log."""
    timestamp: str
    kind: Optional[str] = None
    outcome: Literal["success", "error", "quota"]
    error_message: Optional[str] = None


class CredentialView(BaseModel):
    """Public view of a pool credential. Never carries the raw secret."""
    id: int
    alias: str
    provider: str
    masked_secret: str
    priority: int
    active: bool
    quota_exceeded: bool
    quota_reset_at: Optional[str] = None
    usage_count: int = 0
    usage_by_kind: Dict[str, int] = Field(default_factory=dict)
    error_count: int = 0
    last_used_at: Optional[str] = None
    created_at: str
    in_flight: int = 0


class CredentialCreate(BaseModel):
    alias: str = Field(..., min_length=1, max_length=100)
    secret: str = Field(..., min_length=1)
    provider: str = "google"


class CredentialUpdate(BaseModel):
    alias: Optional[str] = Field(None, min_length=1, max_length=100)
    secret: Optional[str] = Field(None, min_length=1)
    active: Optional[bool] = None


class ReorderRequest(BaseModel):
    """Credential ids, highest priority first."""
    model_config = ConfigDict(populate_by_name=True)

    ordered_ids: List[int] = Field(..., alias="orderedIds")


# Target records and AI answers


class ProcessRecord(BaseModel):
    """A public procurement process row as published by SEACE."""
    id_proceso: str
    nombre_entidad: Optional[str] = None
    fecha_publicacion: Optional[str] = None
    nomenclatura: Optional[str] = None
    reiniciado_desde: Optional[str] = None
    objeto_contratacion: Optional[str] = None
    descripcion_objeto: Optional[str] = None
    estado_proceso: str = "Publicado"
    tipo_proceso: Optional[str] = None
    numero_convocatoria: Optional[str] = None
    codigo_snip: Optional[str] = None
    codigo_cui: Optional[str] = None
    departamento: Optional[str] = None
    provincia: Optional[str] = None
    distrito: Optional[str] = None
    monto_referencial: Optional[float] = None
    moneda: str = "Soles"
    version_seace: str = "3"
    source_url: Optional[str] = None
    pagina_scraping: Optional[int] = None
    fecha_scraping: Optional[str] = None
    categoria_proyecto: Optional[str] = None


class CategoryDecision(BaseModel):
    """AI answer for a categorization request."""
    categoria: str = Field(..., description="Exactly one category key from the provided list")


class LocationGuess(BaseModel):
    """AI answer for a location inference request."""
    departamento: Optional[str] = Field(None, description="Departamento del Peru, or null if unknown")
    provincia: Optional[str] = Field(None, description="Provincia, or null if unknown")
    distrito: Optional[str] = Field(None, description="Distrito, or null if unknown")
    nivel_confianza: Confidence = Field(Confidence.LOW, description="Alto, Medio or Bajo")
    fuente_dato: Literal["Descripcion", "Entidad", "Inferencia"] = Field(
        "Inferencia", description="Where the location was found"
    )

    @field_validator("nivel_confianza", mode="before")
    @classmethod
    def normalize_confidence(cls, v):
        """Accept 'alto', 'ALTO', etc."""
        if isinstance(v, str):
            return v.strip().capitalize()
        return v

    @field_validator("fuente_dato", mode="before")
    @classmethod
    def normalize_source(cls, v):
        if isinstance(v, str):
            cleaned = v.strip().capitalize().replace("ó", "o")
            if cleaned in ("Descripcion", "Entidad", "Inferencia"):
                return cleaned
            return "Inferencia"
        return v
