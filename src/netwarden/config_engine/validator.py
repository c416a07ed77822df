"""Validation pipeline: syntax, then semantic, then dry-run.

Each stage only runs when the previous one produced no errors, so a
dry-run is never spent on a configuration we already know is broken.
Validation is read-only and never takes the host lock.
"""
import logging
from typing import Iterable, Optional

from ..config.schema import NetworkConfiguration
from .dry_run import DryRunValidator
from .generator import InterfacesRenderer
from .schema import ValidationResult
from .semantic import SemanticValidator
from .syntax import SyntaxValidator

logger = logging.getLogger(__name__)


class ConfigValidator:
    """Compose the validation layers."""

    def __init__(
        self,
        syntax: Optional[SyntaxValidator] = None,
        semantic: Optional[SemanticValidator] = None,
        dry_run: Optional[DryRunValidator] = None,
        renderer: Optional[InterfacesRenderer] = None,
    ):
        self.syntax = syntax or SyntaxValidator()
        self.semantic = semantic or SemanticValidator()
        self.dry_run = dry_run
        self.renderer = renderer or InterfacesRenderer()

    def validate_static(
        self,
        config: NetworkConfiguration,
        live_interfaces: Iterable[str] = (),
    ) -> ValidationResult:
        """Run the syntax and semantic layers only."""
        live = set(live_interfaces)

        findings = self.syntax.validate(config, live)
        if any(f.is_error for f in findings):
            logger.info(f"Syntax validation failed with {sum(f.is_error for f in findings)} error(s)")
            return ValidationResult(findings=findings, stage="syntax")

        findings = findings + self.semantic.validate(config, live)
        return ValidationResult(findings=findings, stage="semantic")

    async def validate(
        self,
        config: NetworkConfiguration,
        live_interfaces: Iterable[str] = (),
        content: Optional[str] = None,
    ) -> ValidationResult:
        """
        Run the full pipeline.

        Args:
            config: Candidate configuration
            live_interfaces: Host interfaces that satisfy references
            content: Materialized form to dry-run; rendered from ``config`` when None

        Returns:
            ValidationResult tagged with the last stage that ran
        """
        result = self.validate_static(config, live_interfaces)
        if not result.valid:
            return result
        if self.dry_run is None:
            return result

        if content is None:
            content = self.renderer.render(config)
        findings = result.findings + await self.dry_run.validate(config, content)
        result = ValidationResult(findings=findings, stage="dry_run")

        if result.environment_error:
            logger.warning("Dry-run could not be performed on this host")
        elif not result.valid:
            logger.info(f"Dry-run rejected configuration with {len(result.errors)} error(s)")
        return result
