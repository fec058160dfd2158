from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ragmaster.ingestion.validation import UploadLimits
from ragmaster.runtime.gate import GateThresholds


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────────────────────
    app_name: str = "ragmaster"
    debug: bool = False
    log_level: str = "INFO"

    # ── Google / Gemini ───────────────────────────────────────────────────────
    google_api_key: str = Field(..., description="Google API key for Gemini")
    cheap_model: str = Field(
        default="gemini-2.0-flash", description="Default tier for evaluation and conversion"
    )
    strong_model: str = Field(
        default="gemini-2.5-pro", description="Escalation tier for rewrites and conversion"
    )
    call_history_size: int = Field(
        default=100, ge=1, description="Gateway call records retained for observability"
    )

    # ── Queue ─────────────────────────────────────────────────────────────────
    batch_width: int = Field(default=5, ge=1, description="Items processed concurrently per batch")
    cooldown_seconds: float = Field(default=4.0, ge=0.0, description="Pause between batches")
    auto_start: bool = Field(default=True, description="Start a run after each accepted upload")

    # ── Upload limits ─────────────────────────────────────────────────────────
    max_files: int = Field(default=50, ge=1)
    max_total_size: int = Field(default=10 * 1024 * 1024, ge=1)
    max_file_size: int = Field(default=1 * 1024 * 1024, ge=1)
    allowed_extensions: list[str] = Field(
        default=[".md", ".markdown", ".txt", ".json", ".csv", ".log", ".xml", ".html", ".rtf"]
    )

    # ── Gate thresholds ───────────────────────────────────────────────────────
    gate_composite_min: float = Field(default=0.70, ge=0.0, le=1.0)
    gate_borderline_composite: float = Field(default=0.80, ge=0.0, le=1.0)
    gate_correctness_min: float = Field(default=0.70, ge=0.0, le=1.0)
    gate_completeness_min: float = Field(default=0.70, ge=0.0, le=1.0)
    gate_context_alignment_min: float = Field(default=0.70, ge=0.0, le=1.0)
    gate_soft_fail_escalate_count: int = Field(default=2, ge=1)
    gate_correctness_variance_max: float = Field(default=0.01, ge=0.0)
    gate_completeness_variance_max: float = Field(default=0.01, ge=0.0)
    gate_max_hallucinations: int = Field(default=0, ge=0)
    gate_coverage_hard_floor: float = Field(default=0.0, ge=0.0, le=1.0)
    gate_pass_probability_floor: float = Field(default=0.60, ge=0.0, le=1.0)
    gate_density_penalty_rate: float = Field(default=0.02, ge=0.0)
    gate_density_penalty_cap: float = Field(default=0.10, ge=0.0, le=1.0)
    gate_length_penalty_scale: int = Field(default=400_000, ge=1)
    gate_length_penalty_cap: float = Field(default=0.05, ge=0.0, le=1.0)
    partial_ratio_max: float = Field(
        default=0.30, ge=0.0, le=1.0, description="Failing-segment share that still allows partial rewrite"
    )

    @model_validator(mode="after")
    def validate_size_limits(self) -> "Settings":
        if self.max_file_size > self.max_total_size:
            raise ValueError(
                f"max_file_size={self.max_file_size} must not exceed "
                f"max_total_size={self.max_total_size}"
            )
        return self

    def upload_limits(self) -> UploadLimits:
        return UploadLimits(
            max_files=self.max_files,
            max_total_size=self.max_total_size,
            max_file_size=self.max_file_size,
            allowed_extensions=self.allowed_extensions,
        )

    def gate_thresholds(self) -> GateThresholds:
        """Collect the gate_* fields into the threshold object used by the gate."""
        return GateThresholds(
            composite_min=self.gate_composite_min,
            borderline_composite=self.gate_borderline_composite,
            correctness_min=self.gate_correctness_min,
            completeness_min=self.gate_completeness_min,
            context_alignment_min=self.gate_context_alignment_min,
            soft_fail_escalate_count=self.gate_soft_fail_escalate_count,
            correctness_variance_max=self.gate_correctness_variance_max,
            completeness_variance_max=self.gate_completeness_variance_max,
            max_hallucinations=self.gate_max_hallucinations,
            coverage_hard_floor=self.gate_coverage_hard_floor,
            pass_probability_floor=self.gate_pass_probability_floor,
            density_penalty_rate=self.gate_density_penalty_rate,
            density_penalty_cap=self.gate_density_penalty_cap,
            length_penalty_scale=self.gate_length_penalty_scale,
            length_penalty_cap=self.gate_length_penalty_cap,
        )


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance. Fails fast on missing required vars."""
    return Settings()
