"""
Data-driven DOM matcher lists.

The creation tool changes its markup without notice. Every selector and
keyword the page agent relies on lives here, with defaults in code and an
optional YAML override (SELECTORS_FILE), so layout drift is fixed by
editing data instead of code.
"""

import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class SelectorConfig(BaseModel):
    """Matcher lists evaluated in order; the first visible match wins."""

    input_selectors: List[str] = Field(
        default_factory=lambda: [
            'textarea[placeholder*="Describe your image"]',
            'textarea[placeholder*="Describe"]',
            "textarea.bg-transparent",
            "textarea",
        ],
        description="Prompt field selectors, highest priority first"
    )

    submit_candidates: str = Field(
        default='button, [role="button"]',
        description="Elements considered as submit controls"
    )

    submit_text_keywords: List[str] = Field(
        default_factory=lambda: ["generate", "create", "submit"],
        description="Lower-case words matched against control text"
    )

    submit_aria_keywords: List[str] = Field(
        default_factory=lambda: ["generate", "create"],
        description="Lower-case words matched against aria-label"
    )

    loading_selectors: List[str] = Field(
        default_factory=lambda: [
            "svg circle[stroke-dashoffset]",
            '[aria-live="polite"]',
            ".bg-token-bg-secondary svg circle",
        ],
        description="Loading indicators; a match counts when its parent shows a percentage"
    )

    generic_loader_selector: str = Field(
        default=".bg-token-bg-secondary svg circle",
        description="Loader whose absence means the page has finished"
    )

    loading_text_marker: str = Field(
        default="%",
        description="Text that marks a loading indicator's container as active"
    )

    status_selector: str = Field(
        default='[role="status"]',
        description="Status element read for progress/ready/error text"
    )

    in_progress_keywords: List[str] = Field(
        default_factory=lambda: ["generating", "processing", "%"],
    )

    ready_keywords: List[str] = Field(
        default_factory=lambda: ["ready"],
    )

    error_keywords: List[str] = Field(
        default_factory=lambda: ["error", "failed"],
    )

    limit_selectors: List[str] = Field(
        default_factory=lambda: [
            '[role="alert"]',
            '[data-sonner-toast]',
            ".toast",
        ],
        description="Containers that may hold a rate-limit banner"
    )

    limit_keywords: List[str] = Field(
        default_factory=lambda: [
            "rate limit",
            "too many",
            "try again later",
            "limit reached",
            "queue is full",
        ],
        description="Lower-case phrases identifying a rate-limit message"
    )

    settings_combobox_selector: str = Field(
        default='button[role="combobox"]',
        description="Controls holding the current generation settings"
    )

    @field_validator("input_selectors")
    @classmethod
    def validate_input_selectors(cls, v: List[str]) -> List[str]:
        cleaned = [s.strip() for s in v if s and s.strip()]
        if not cleaned:
            raise ValueError("At least one input selector is required")
        return cleaned

    @field_validator(
        "submit_text_keywords",
        "submit_aria_keywords",
        "in_progress_keywords",
        "ready_keywords",
        "error_keywords",
        "limit_keywords",
    )
    @classmethod
    def lower_keywords(cls, v: List[str]) -> List[str]:
        """Matching is case-insensitive; store lower-case once."""
        return [k.lower() for k in v if k]


def load_selectors(path: Optional[Path] = None) -> SelectorConfig:
    """
    Build the selector config, applying a YAML override when given.

    Keys missing from the file keep their defaults.

    Raises:
        ConfigurationError: If the file cannot be read or does not validate
    """
    if path is None:
        return SelectorConfig()

    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Cannot read selectors file: {e}",
            context={"path": str(path)}
        ) from e

    if not isinstance(raw, dict):
        raise ConfigurationError(
            "Selectors file must contain a mapping",
            context={"path": str(path)}
        )

    try:
        selectors = SelectorConfig(**raw)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid selectors file: {e}",
            context={"path": str(path)}
        ) from e

    logger.info(f"Loaded selector overrides from {path}: {sorted(raw)}")
    return selectors
