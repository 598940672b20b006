"""Generates sync pull request descriptions, preferring an LLM and falling back to a template."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import asdict

import structlog
from anthropic import AsyncAnthropic

from fork_sync_manager.configuration.models import OrchestratorConfig
from fork_sync_manager.synchronize.models import DescriptionContext
from fork_sync_manager.utils.constants import MAX_COMMIT_SUMMARY_LINES
from fork_sync_manager.utils.templates import render_packaged_template

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

MAX_DESCRIPTION_TOKENS = 1500
MAX_PROMPT_FILES = 200


class DescriptionGenerator(ABC):
    """Produces the human-readable part of a sync pull request body."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Short name used in logs."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the generator can be used in this environment."""
        pass

    @abstractmethod
    async def generate(self, context: DescriptionContext) -> str:
        """Describe the upstream change."""
        pass


class TemplateDescriptionGenerator(DescriptionGenerator):
    """Deterministic description rendered from a packaged Jinja2 template."""

    @property
    def name(self) -> str:
        """Short name used in logs."""
        return "template"

    def is_available(self) -> bool:
        """The template is always available."""
        return True

    async def generate(self, context: DescriptionContext) -> str:
        """Render the sync PR description template."""
        return render_packaged_template(
            "sync_pr_body.j2",
            max_commit_lines=MAX_COMMIT_SUMMARY_LINES,
            **asdict(context),
        )


class AnthropicDescriptionGenerator(DescriptionGenerator):
    """Description written by an Anthropic model from the commit and file summary."""

    def __init__(self, api_key: str | None, model: str, timeout: float) -> None:
        """Initialize the generator; it is unavailable without an API key."""
        self.model = model
        self.timeout = timeout
        self._client: AsyncAnthropic | None = AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=1) if api_key else None

    @property
    def name(self) -> str:
        """Short name used in logs."""
        return "anthropic"

    def is_available(self) -> bool:
        """Whether an API key was configured."""
        return self._client is not None

    async def generate(self, context: DescriptionContext) -> str:
        """Ask the model for a reviewer-oriented summary of the upstream change.

        Raises:
            RuntimeError: If the generator is unavailable or the model returns no text.
        """
        if self._client is None:
            raise RuntimeError("Anthropic description generator is not configured")
        prompt = render_packaged_template(
            "sync_pr_prompt.j2",
            max_commit_lines=MAX_COMMIT_SUMMARY_LINES,
            max_files=MAX_PROMPT_FILES,
            **asdict(context),
        )
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=MAX_DESCRIPTION_TOKENS,
            temperature=0.2,
            messages=[{"role": "user", "content": prompt}],
        )
        text = "".join(getattr(block, "text", "") for block in response.content if getattr(block, "type", None) == "text").strip()
        if not text:
            raise RuntimeError("Anthropic response contained no text")
        logger.info(
            "Generated sync PR description with Anthropic",
            model=self.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return text


def select_description_generator(config: OrchestratorConfig) -> DescriptionGenerator:
    """Pick the preferred description generator for the configuration."""
    if config.anthropic_api_key:
        return AnthropicDescriptionGenerator(config.anthropic_api_key, config.anthropic_model, config.description_timeout_seconds)
    return TemplateDescriptionGenerator()


async def generate_description(
    context: DescriptionContext,
    generator: DescriptionGenerator,
    timeout: float,
    fallback: DescriptionGenerator | None = None,
) -> str:
    """Describe an upstream change, never failing because of the preferred generator.

    The preferred generator is bounded by ``timeout``; any error, timeout or
    empty result falls back to the deterministic template.
    """
    if fallback is None:
        fallback = TemplateDescriptionGenerator()
    if generator.is_available() and generator is not fallback:
        try:
            description = await asyncio.wait_for(generator.generate(context), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Description generation timed out, using template", generator=generator.name, timeout=timeout)
        except Exception as exc:
            logger.warning("Description generation failed, using template", generator=generator.name, error=str(exc), error_type=type(exc).__name__)
        else:
            if description.strip():
                return description
            logger.warning("Description generator returned nothing, using template", generator=generator.name)
    return await fallback.generate(context)
