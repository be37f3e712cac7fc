"""Job type registry and the payload variants each type accepts."""

from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from errors import InvalidJobError

FAMILIES = ("scan", "analysis", "forge")


class ScanPayload(BaseModel):
    """Input of the scan family."""

    kind: Literal["scan"] = "scan"
    path: Optional[str] = Field(None, description="Directory to walk (scan.path) or file to refresh")
    recursive: bool = Field(default=True, description="Descend into subdirectories")


class AnalysisPayload(BaseModel):
    """Input of the analysis family."""

    kind: Literal["analysis"] = "analysis"
    mode: str = Field(..., description="Analysis mode, e.g. caption or tags")
    path: str = Field(..., description="File sent to the model")
    model: str = Field(..., description="Model name")
    prompt: Optional[str] = Field(None, description="Prompt override")
    options: Dict[str, Any] = Field(default_factory=dict, description="Model options")


class ForgePayload(BaseModel):
    """Input of the image regeneration family."""

    kind: Literal["forge"] = "forge"
    path: str = Field(..., description="Source image")
    prompt: str = Field(..., description="Positive prompt")
    negative_prompt: str = Field(default="", description="Negative prompt")
    steps: int = Field(default=20, ge=1, le=150)
    seed: int = Field(default=-1)
    denoising_strength: float = Field(default=0.5, ge=0.0, le=1.0)
    model: Optional[str] = Field(None, description="Checkpoint to use")


JobPayload = Annotated[
    Union[ScanPayload, AnalysisPayload, ForgePayload],
    Field(discriminator="kind"),
]

_payload_adapter = TypeAdapter(JobPayload)


@dataclass
class JobTypeSpec:
    """What the orchestration core needs to know about one job type."""

    name: str
    payload_model: Type[BaseModel]
    executor: Callable[..., Optional[dict]]
    family: str = ""
    requires_subject: bool = True
    subject_kinds: Tuple[str, ...] = ()
    skip_if_done: bool = False
    build_payload: Optional[Callable[..., dict]] = None
    timeout_sec: Optional[int] = None
    # Tells apart concurrent jobs of a subject-less type, e.g. scans of different roots
    dedup_key: Optional[Callable[[BaseModel], Optional[str]]] = None
    # Health check of the external service the executor needs; False holds the queue
    health_check: Optional[Callable[[], bool]] = None

    def __post_init__(self):
        if not self.family:
            self.family = self.name.split(".", 1)[0]

    @property
    def submode(self) -> str:
        return self.name.split(".", 1)[1] if "." in self.name else self.name


@dataclass
class JobRegistry:
    """Maps job type names to their spec."""

    specs: Dict[str, JobTypeSpec] = field(default_factory=dict)

    def register(self, spec: JobTypeSpec) -> JobTypeSpec:
        if spec.family not in FAMILIES:
            raise ValueError(f"Unknown job family for {spec.name}")
        self.specs[spec.name] = spec
        return spec

    def get(self, job_type: str) -> JobTypeSpec:
        spec = self.specs.get(job_type)
        if spec is None:
            raise InvalidJobError(f"Unknown job type: {job_type}", code="unknown_type")
        return spec

    def types_for_family(self, family: str) -> List[str]:
        if family not in FAMILIES:
            raise InvalidJobError(f"Unknown job family: {family}", code="unknown_family")
        return sorted(name for name, spec in self.specs.items() if spec.family == family)

    def family_of(self, job_type: str) -> str:
        return self.get(job_type).family

    def families(self) -> List[str]:
        return list(FAMILIES)

    def health_checks(self, family: str) -> List[Callable[[], bool]]:
        """Distinct upstream health checks of the types in ``family``."""
        checks: List[Callable[[], bool]] = []
        for name in self.types_for_family(family):
            check = self.specs[name].health_check
            if check is not None and check not in checks:
                checks.append(check)
        return checks

    def parse_payload(self, job_type: str, raw: Optional[dict]) -> BaseModel:
        """Validate a stored or built payload against the type's variant."""
        spec = self.get(job_type)
        data = dict(raw or {})
        data.setdefault("kind", spec.family)
        try:
            payload = _payload_adapter.validate_python(data)
        except ValidationError as e:
            raise InvalidJobError(f"Invalid payload for {job_type}: {e}", code="invalid_payload") from e
        if not isinstance(payload, spec.payload_model):
            raise InvalidJobError(
                f"Payload kind {data['kind']!r} does not match {job_type}", code="invalid_payload"
            )
        return payload
