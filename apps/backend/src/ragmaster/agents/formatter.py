"""
Markdown formatter.

Normalises non-Markdown uploads into Markdown before evaluation.  Files that
are already Markdown pass through untouched.
"""

import logging

from ragmaster.agents.gateway import AgentError, ModelGateway
from ragmaster.agents.prompts.formatter import FORMATTER_SYSTEM_PROMPT, FORMATTER_USER_TEMPLATE

log = logging.getLogger(__name__)

MARKDOWN_SUFFIXES = (".md", ".markdown")


def is_markdown(filename: str) -> bool:
    return filename.lower().endswith(MARKDOWN_SUFFIXES)


class MarkdownFormatter:
    def __init__(self, gateway: ModelGateway, model_id: str) -> None:
        self._gateway = gateway
        self._model_id = model_id

    async def normalize(self, content: str, filename: str) -> tuple[str, bool]:
        """Return ``(markdown, applied)`` where `applied` says whether a conversion ran."""
        if is_markdown(filename):
            return content, False

        log.info("Converting %s to Markdown", filename)
        messages = [
            {"role": "system", "content": FORMATTER_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": FORMATTER_USER_TEMPLATE.format(filename=filename, content=content),
            },
        ]
        try:
            markdown = await self._gateway.invoke(self._model_id, messages, {"temperature": 0})
        except Exception as exc:
            raise AgentError("formatter", f"Failed to convert document: {exc}") from exc
        if not markdown.strip():
            raise AgentError("formatter", "Markdown conversion returned empty text")
        return markdown.strip(), True
