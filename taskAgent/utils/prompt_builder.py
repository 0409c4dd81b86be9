"""Prompt template builder.

Prompts are Jinja2 templates under ``taskAgent/config/prompt_templates`` so
they can be edited without touching code.
"""

from __future__ import annotations

from functools import lru_cache

from jinja2.sandbox import SandboxedEnvironment

from taskAgent.config.project_root import resolve_config_path


@lru_cache(maxsize=None)
def _read_template(template_path: str) -> str:
    with open(resolve_config_path(template_path), "r", encoding="utf-8") as f:
        return f.read()


class PromptBuilder:
    """Loads and renders prompt templates."""

    TEMPLATE_DIR = "prompt_templates"
    SYSTEM_TEMPLATE = f"{TEMPLATE_DIR}/system.jinja2"
    SUMMARIZE_TEMPLATE = f"{TEMPLATE_DIR}/summarize.jinja2"

    @staticmethod
    def _load_template(template_path: str) -> str:
        """Load template source.

        Args:
            template_path: Path relative to the bundled config directory

        Returns:
            Template source string
        """
        return _read_template(template_path)

    @staticmethod
    def _render_template(template: str, params: dict) -> str:
        """Render a template in a sandboxed Jinja2 environment."""
        env = SandboxedEnvironment(trim_blocks=True, lstrip_blocks=True)
        return env.from_string(template).render(**params).strip()

    @classmethod
    def load_system_prompt(cls, **params) -> str:
        """Render the task system prompt.

        Args:
            **params: mode, tools, protocol, todos, is_child_task, ...

        Returns:
            Rendered system prompt
        """
        template = cls._load_template(cls.SYSTEM_TEMPLATE)
        return cls._render_template(template, params)

    @classmethod
    def load_summarize_prompt(cls, **params) -> str:
        """Render the conversation summary request.

        Args:
            **params: transcript, message_count

        Returns:
            Rendered summary prompt
        """
        template = cls._load_template(cls.SUMMARIZE_TEMPLATE)
        return cls._render_template(template, params)


__all__ = ["PromptBuilder"]
