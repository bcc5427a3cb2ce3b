"""
Claude Fix Model
================

FixModel adapter that asks Claude (through the Claude Code SDK) for a fix
suggestion and validates the JSON answer with pydantic.

Usage:
    model = ClaudeFixModel(model="claude-sonnet-4-5-20250929", timeout=300)
    suggestion = await model.suggest_fix(error_summary, {"src/app.ts": "..."})
"""

import asyncio
import json
import logging
import re
from typing import Literal, Optional

from claude_code_sdk import ClaudeCodeOptions, ClaudeSDKClient
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from healforge.collaborators import FileChange, FixSuggestion
from healforge.config import DEFAULT_MODEL, HealConfig
from healforge.errors import TransientNetworkError, ValidationError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an expert software engineer specializing in debugging and fixing CI failures.

Given an error summary, CI log excerpts and relevant file contents, analyze the problem and suggest a fix.

Respond with a single JSON object with:
- analysis: your analysis of the error
- rootCause: the identified root cause
- suggestedFix: an object with:
  - description: what the fix does
  - files: an array of file changes, each with:
    - path: the repository-relative file path
    - action: "create", "modify", or "delete"
    - content: the full new file content (required for create and modify)
- confidence: your confidence level from 0 to 1
- additionalNotes: any additional context or warnings

Respond with valid JSON only."""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


# =============================================================================
# Response schema
# =============================================================================

class FileChangeModel(BaseModel):
    path: str
    action: Literal["create", "modify", "delete"]
    content: Optional[str] = None
    diff: Optional[str] = None


class SuggestedFixModel(BaseModel):
    description: str
    files: list[FileChangeModel]


class FixSuggestionModel(BaseModel):
    analysis: str
    rootCause: str
    suggestedFix: SuggestedFixModel
    confidence: float = Field(ge=0, le=1)
    additionalNotes: Optional[str] = None


def parse_fix_response(text: str) -> FixSuggestion:
    """Extract and validate the JSON fix suggestion from a model reply."""
    match = _JSON_OBJECT.search(text)
    if not match:
        raise ValidationError("No JSON found in model response")
    try:
        parsed = FixSuggestionModel.model_validate(json.loads(match.group(0)))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Model response is not valid JSON: {e}") from e
    except PydanticValidationError as e:
        raise ValidationError(
            "Model response does not match the fix schema",
            [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
        ) from e

    return FixSuggestion(
        analysis=parsed.analysis,
        root_cause=parsed.rootCause,
        description=parsed.suggestedFix.description,
        files=[
            FileChange(path=f.path, action=f.action, content=f.content, diff=f.diff)
            for f in parsed.suggestedFix.files
        ],
        confidence=parsed.confidence,
        additional_notes=parsed.additionalNotes,
    )


def build_fix_prompt(error_summary: str, file_contents: dict[str, str], context: Optional[str] = None) -> str:
    files_section = "\n\n".join(
        f"### {path}\n```\n{content}\n```" for path, content in file_contents.items()
    ) or "(none)"
    prompt = f"## Error Summary\n```\n{error_summary}\n```\n\n## Relevant Files\n{files_section}\n\n"
    if context:
        prompt += f"## Additional Context\n{context}\n\n"
    return prompt + "Analyze the error and provide a fix in JSON format."


class ClaudeFixModel:
    """One-shot, tool-less Claude query per fix request."""

    def __init__(self, model: str = DEFAULT_MODEL, timeout: float = 300.0):
        self.model = model
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: HealConfig) -> "ClaudeFixModel":
        return cls(model=config.model, timeout=config.model_timeout)

    async def _ask(self, prompt: str) -> str:
        client = ClaudeSDKClient(
            options=ClaudeCodeOptions(
                model=self.model,
                system_prompt=SYSTEM_PROMPT,
                allowed_tools=[],
                max_turns=1,
            )
        )
        response_text = ""
        async with client:
            await client.query(prompt)
            async for msg in client.receive_response():
                if type(msg).__name__ == "AssistantMessage" and hasattr(msg, "content"):
                    for block in msg.content:
                        if type(block).__name__ == "TextBlock" and hasattr(block, "text"):
                            response_text += block.text
        return response_text

    async def suggest_fix(
        self, error_summary: str, file_contents: dict[str, str], context: Optional[str] = None,
    ) -> FixSuggestion:
        prompt = build_fix_prompt(error_summary, file_contents, context)
        try:
            text = await asyncio.wait_for(self._ask(prompt), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Model did not answer within {self.timeout:.0f}s") from e

        if not text.strip():
            raise ValidationError("Empty response from model")
        suggestion = parse_fix_response(text)
        logger.info(
            "Model proposed %d file change(s) with confidence %.2f",
            len(suggestion.files), suggestion.confidence,
        )
        return suggestion
