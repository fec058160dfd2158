"""
Conversion Stage.

One gateway call that turns the (possibly revised) Markdown into the
retrieval-ready JSON structure.  Missing `doc` or `chunks` is terminal for the
item; nothing is retried here.
"""

import json
import logging

from pydantic import ValidationError

from ragmaster.agents.gateway import AgentError, ModelGateway
from ragmaster.agents.prompts.converter import CONVERTER_SYSTEM_PROMPT, CONVERTER_USER_TEMPLATE
from ragmaster.models.schemas import StructuredResult

log = logging.getLogger(__name__)

REQUIRED_FIELDS = ("doc", "chunks")


class ConversionError(AgentError):
    def __init__(self, reason: str, raw_output: str = "") -> None:
        super().__init__("converter", reason, raw_output)


class ConversionStage:
    def __init__(self, gateway: ModelGateway) -> None:
        self._gateway = gateway

    async def convert(
        self, text: str, document_id: str, source_ref: str, model_id: str
    ) -> StructuredResult:
        """
        Convert `text` with `model_id` and return the validated structure.

        Raises
        ------
        ConversionError
            If the response is not JSON or lacks a mandatory top-level field.
        Exception
            Gateway errors propagate unchanged.
        """
        messages = [
            {"role": "system", "content": CONVERTER_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": CONVERTER_USER_TEMPLATE.format(
                    doc_id=document_id, source_uri=source_ref, markdown=text
                ),
            },
        ]
        raw = await self._gateway.invoke(model_id, messages, {"json": True, "temperature": 0})

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConversionError(f"Response is not valid JSON: {exc}", raw) from exc

        if not isinstance(data, dict):
            raise ConversionError("Response is not a JSON object", raw)
        missing = [field for field in REQUIRED_FIELDS if data.get(field) is None]
        if missing:
            raise ConversionError(
                f"LLM returned invalid structure - missing required fields: {', '.join(missing)}",
                raw,
            )

        try:
            result = StructuredResult.model_validate(data)
        except ValidationError as exc:
            raise ConversionError(f"Schema validation failed: {exc}", raw) from exc

        log.debug(
            "Converter %s — model=%s chunks=%d", document_id, model_id, len(result.chunks)
        )
        return result
