"""Remote language inference used when patterns are not confident enough"""

import json
import logging
import re
from typing import Any, Optional, Protocol, Union, runtime_checkable

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from browser_flow.core.errors import ParsingError
from browser_flow.utils import time_execution_async

from .views import InferenceResponse, ParsingContext

logger = logging.getLogger(__name__)

MAX_PROMPT_ELEMENTS = 10
MAX_PROMPT_HISTORY = 3


class InferencePrompt(BaseModel):
	"""Normalized instruction plus a compact summary of the page"""
	model_config = ConfigDict(extra='forbid')

	text: str
	language: str = "en"
	current_url: Optional[str] = None
	page_title: Optional[str] = None
	visible_elements: list[dict[str, Any]] = Field(default_factory=list)
	recent_commands: list[str] = Field(default_factory=list)

	@classmethod
	def build(cls, text: str, context: ParsingContext, language: str = "en") -> 'InferencePrompt':
		elements = [
			element.model_dump(exclude_none=True, exclude_defaults=True)
			for element in context.visible_elements[:MAX_PROMPT_ELEMENTS]
		]
		return cls(
			text=text,
			language=language,
			current_url=context.current_url,
			page_title=context.page_title,
			visible_elements=elements,
			recent_commands=context.command_history[-MAX_PROMPT_HISTORY:],
		)


@runtime_checkable
class LanguageInferenceClient(Protocol):
	"""Turns a prompt into structured commands; caching and rate limits are its own business"""

	async def infer(self, prompt: InferencePrompt) -> Union[InferenceResponse, dict[str, Any]]:
		...


def validate_inference_response(data: Any) -> InferenceResponse:
	"""Check the minimal schema: a commands list whose entries each declare a type"""
	if isinstance(data, InferenceResponse):
		return data
	if not isinstance(data, dict):
		raise ParsingError(f"Inference response must be an object, got {type(data).__name__}")
	commands = data.get('commands')
	if not isinstance(commands, list):
		raise ParsingError("Inference response is missing a commands list")
	for index, command in enumerate(commands):
		if not isinstance(command, dict) or not command.get('type'):
			raise ParsingError(f"Inference command {index} does not declare a type")
	try:
		return InferenceResponse.model_validate(data)
	except ValidationError as e:
		raise ParsingError(f"Invalid inference response: {e.error_count()} validation error(s)") from e


class ChatModelInferenceClient:
	"""Inference client backed by any langchain chat model"""

	def __init__(self, llm: BaseChatModel):
		self.llm = llm

	@time_execution_async("command_inference")
	async def infer(self, prompt: InferencePrompt) -> InferenceResponse:
		messages = [
			SystemMessage(content=self._build_system_prompt()),
			HumanMessage(content=self._build_user_prompt(prompt)),
		]
		response = await self.llm.ainvoke(messages)
		return self._parse_llm_response(response.content)

	def _build_system_prompt(self) -> str:
		return """You translate natural-language browser instructions into structured commands.

Respond with a single JSON object:
{
  "commands": [
    {"type": "navigate|click|fill|search|scroll|extract|wait|wait_for_element|screenshot|new_tab|close_tab|switch_tab|submit",
     "parameters": {"url": "...", "target": "...", "selector": "...", "field": "...", "value": "...",
                    "query": "...", "direction": "up|down", "duration": 1000, "tab_id": 0},
     "confidence": 0.9}
  ],
  "confidence": 0.9,
  "requires_clarification": false,
  "clarification_question": null
}

Only include parameters the instruction actually provides. Ask for clarification when the instruction is ambiguous."""

	def _build_user_prompt(self, prompt: InferencePrompt) -> str:
		text = f"Instruction: {prompt.text}\nLanguage: {prompt.language}\n\n"

		if prompt.current_url:
			text += f"Current URL: {prompt.current_url}\n"
		if prompt.page_title:
			text += f"Page title: {prompt.page_title}\n"
		if prompt.visible_elements:
			text += f"Visible elements:\n{json.dumps(prompt.visible_elements, indent=2)}\n"
		if prompt.recent_commands:
			text += "Recent commands:\n" + "\n".join(f"- {c}" for c in prompt.recent_commands) + "\n"

		return text

	def _parse_llm_response(self, content: Any) -> InferenceResponse:
		"""Pull the JSON object out of the model reply and validate it"""
		if not isinstance(content, str):
			content = str(content)
		json_match = re.search(r'\{[\s\S]*\}', content)
		try:
			data = json.loads(json_match.group() if json_match else content)
		except json.JSONDecodeError as e:
			logger.debug(f"Unparseable inference reply: {content[:200]}")
			raise ParsingError(f"Inference reply is not valid JSON: {e}") from e
		return validate_inference_response(data)
