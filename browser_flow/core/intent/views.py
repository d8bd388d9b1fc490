"""Intent parsing data models"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from urllib.parse import quote_plus

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from uuid_extensions import uuid7str

from browser_flow.core.commands.views import (
	ClickCommand, Command, CreateTabCommand, CloseTabCommand, ExtractTextCommand,
	FillCommand, NavigateCommand, ScreenshotCommand, ScrollCommand, SwitchTabCommand,
	WaitCommand, WaitForElementCommand, WorkflowDefinition,
)

DEFAULT_CLARIFICATION_QUESTION = "Could you please rephrase or give more details about what you want to do?"

SEARCH_ENGINE_URLS = {
	'google': "https://www.google.com/search?q={query}",
	'bing': "https://www.bing.com/search?q={query}",
	'duckduckgo': "https://duckduckgo.com/?q={query}",
}

# Nouns users say when asking for data, mapped to the selector that holds it
EXTRACT_TARGETS = {
	'links': 'a',
	'link': 'a',
	'images': 'img',
	'image': 'img',
	'headings': 'h1, h2, h3',
	'titles': 'h1, h2, h3',
	'title': 'title',
	'tables': 'table',
	'table': 'table',
	'prices': '[class*="price"]',
	'paragraphs': 'p',
}


class CommandIntent(str, Enum):
	"""What the user asked the browser to do"""
	NAVIGATE = "navigate"
	CLICK = "click"
	FILL = "fill"
	SEARCH = "search"
	SCROLL = "scroll"
	EXTRACT = "extract"
	WAIT = "wait"
	WAIT_FOR_ELEMENT = "wait_for_element"
	SCREENSHOT = "screenshot"
	NEW_TAB = "new_tab"
	CLOSE_TAB = "close_tab"
	SWITCH_TAB = "switch_tab"
	SUBMIT = "submit"
	UNKNOWN = "unknown"


class EntityKind(str, Enum):
	URL = "url"
	TEXT = "text"
	NUMBER = "number"
	DIRECTION = "direction"


class CommandComplexity(str, Enum):
	SIMPLE = "simple"
	MODERATE = "moderate"
	COMPLEX = "complex"


class RiskLevel(str, Enum):
	LOW = "low"
	MEDIUM = "medium"
	HIGH = "high"


class ParseSource(str, Enum):
	PATTERN = "pattern"
	INFERENCE = "inference"
	COMBINED = "combined"


@dataclass
class CommandPattern:
	"""Declarative pattern matched against normalized text"""
	id: str
	regex: re.Pattern
	intent: CommandIntent
	confidence: float
	required_entities: list[EntityKind] = field(default_factory=list)
	optional_entities: list[EntityKind] = field(default_factory=list)
	examples: list[str] = field(default_factory=list)
	language: str = "en"


class Entity(BaseModel):
	"""A value pulled out of the matched text"""
	model_config = ConfigDict(extra='forbid')

	kind: EntityKind
	value: Any
	start: int = Field(default=-1, description="Offset in the normalized text, -1 if unknown")
	end: int = Field(default=-1)


class ElementInfo(BaseModel):
	"""Digest of a visible element handed to the parser as context"""
	model_config = ConfigDict(extra='ignore')

	tag: str = Field(default="", validation_alias=AliasChoices('tag', 'tagName'))
	text: Optional[str] = None
	selector: Optional[str] = None
	role: Optional[str] = None
	attributes: dict[str, str] = Field(default_factory=dict)


class ParsingContext(BaseModel):
	"""Where the user is and what they did recently"""
	model_config = ConfigDict(extra='forbid', populate_by_name=True)

	current_url: Optional[str] = Field(None, validation_alias=AliasChoices('current_url', 'currentUrl'))
	page_title: Optional[str] = Field(None, validation_alias=AliasChoices('page_title', 'pageTitle'))
	visible_elements: list[ElementInfo] = Field(
		default_factory=list, validation_alias=AliasChoices('visible_elements', 'visibleElements')
	)
	command_history: list[str] = Field(
		default_factory=list,
		validation_alias=AliasChoices('command_history', 'commandHistory'),
		description="Most recent commands last",
	)
	language: Optional[str] = Field(None, description="Force a language instead of detecting it")


class LanguageDetection(BaseModel):
	model_config = ConfigDict(extra='forbid')

	language: str
	confidence: float = Field(ge=0, le=1)
	alternatives: list[tuple[str, float]] = Field(default_factory=list)


class ParsedCommand(BaseModel):
	"""One interpreted instruction plus the annotations used for gating"""
	model_config = ConfigDict(extra='forbid')

	id: str = Field(default_factory=uuid7str)
	intent: CommandIntent
	parameters: dict[str, Any] = Field(default_factory=dict)
	confidence: float = Field(ge=0, le=1)
	source: ParseSource = ParseSource.PATTERN
	pattern_id: Optional[str] = None
	original_text: str = ""
	entities: list[Entity] = Field(default_factory=list)
	complexity: CommandComplexity = CommandComplexity.SIMPLE
	required_capabilities: list[str] = Field(default_factory=list)
	risk_level: RiskLevel = RiskLevel.LOW

	def dedupe_key(self) -> tuple:
		return (self.intent.value, tuple(sorted((k, repr(v)) for k, v in self.parameters.items())))

	def to_command(self, search_engine: str = "google") -> Optional[Command]:
		"""Convert into an executable command, or None when nothing can be executed"""
		p = self.parameters
		intent = self.intent

		if intent == CommandIntent.NAVIGATE:
			if p.get('url'):
				return NavigateCommand(url=p['url'])
			query = p.get('query')
			if not query:
				return None
			# "open example.com" is a host, "open the weather" is a search
			if '.' in query and ' ' not in query:
				return NavigateCommand(url=f"https://{query}")
			return NavigateCommand(url=search_url(query, search_engine))

		if intent == CommandIntent.SEARCH and p.get('query'):
			return NavigateCommand(url=search_url(p['query'], p.get('engine') or search_engine))

		if intent == CommandIntent.CLICK and (p.get('selector') or p.get('target')):
			return ClickCommand(selector=p.get('selector') or f"text={p['target']}")

		if intent == CommandIntent.FILL and (p.get('selector') or p.get('field')) and 'value' in p:
			return FillCommand(selector=p.get('selector') or field_selector(p['field']), value=str(p['value']))

		if intent == CommandIntent.SCROLL:
			if p.get('position'):
				return ScrollCommand(position=p['position'])
			return ScrollCommand(direction=p.get('direction', 'down'), amount=int(p.get('amount', 500)))

		if intent == CommandIntent.EXTRACT:
			target = str(p.get('target') or '').strip()
			selector = p.get('selector') or EXTRACT_TARGETS.get(target.split(' ')[-1] if target else '', 'body')
			return ExtractTextCommand(selector=selector, multiple=selector != 'body')

		if intent == CommandIntent.WAIT and p.get('duration') is not None:
			return WaitCommand(duration=int(p['duration']))

		if intent == CommandIntent.WAIT_FOR_ELEMENT and (p.get('selector') or p.get('target')):
			return WaitForElementCommand(selector=p.get('selector') or f"text={p['target']}")

		if intent == CommandIntent.SCREENSHOT:
			return ScreenshotCommand(full_page=bool(p.get('full_page', False)))

		if intent == CommandIntent.NEW_TAB:
			return CreateTabCommand(url=p.get('url'))

		if intent == CommandIntent.CLOSE_TAB:
			return CloseTabCommand(tab_id=p.get('tab_id'))

		if intent == CommandIntent.SWITCH_TAB and p.get('tab_id') is not None:
			return SwitchTabCommand(tab_id=int(p['tab_id']))

		if intent == CommandIntent.SUBMIT:
			return ClickCommand(selector=p.get('selector') or 'button[type="submit"], input[type="submit"]')

		return None


class ParsingResult(BaseModel):
	"""Everything the parser concluded about one instruction"""
	model_config = ConfigDict(extra='forbid')

	commands: list[ParsedCommand] = Field(default_factory=list)
	workflows: list[WorkflowDefinition] = Field(default_factory=list)
	confidence: float = Field(ge=0, le=1)
	requires_clarification: bool = False
	clarification_questions: list[str] = Field(default_factory=list)
	errors: list[str] = Field(default_factory=list)
	warnings: list[str] = Field(default_factory=list)
	source: ParseSource = ParseSource.PATTERN
	language: Optional[LanguageDetection] = None
	normalized_text: str = ""
	processing_time_ms: float = 0.0

	@model_validator(mode='after')
	def _ensure_question(self) -> 'ParsingResult':
		if self.requires_clarification and not self.clarification_questions:
			self.clarification_questions = [DEFAULT_CLARIFICATION_QUESTION]
		return self

	def executable_commands(self, search_engine: str = "google") -> list[Command]:
		return [c for c in (pc.to_command(search_engine) for pc in self.commands) if c is not None]


class InferredCommand(BaseModel):
	"""Command as returned by the inference client, before validation into a Command"""
	model_config = ConfigDict(extra='allow')

	type: str
	parameters: dict[str, Any] = Field(default_factory=dict)
	confidence: Optional[float] = Field(None, ge=0, le=1)


class InferenceResponse(BaseModel):
	"""Minimal schema an inference reply must satisfy"""
	model_config = ConfigDict(extra='ignore', populate_by_name=True)

	commands: list[InferredCommand]
	confidence: float = Field(default=0.5, ge=0, le=1)
	requires_clarification: bool = Field(
		default=False, validation_alias=AliasChoices('requires_clarification', 'requiresClarification')
	)
	clarification_question: Optional[str] = Field(
		None, validation_alias=AliasChoices('clarification_question', 'clarificationQuestion')
	)
	reasoning: Optional[str] = None


def search_url(query: str, engine: str = "google") -> str:
	template = SEARCH_ENGINE_URLS.get(engine, SEARCH_ENGINE_URLS['google'])
	return template.format(query=quote_plus(query))


def field_selector(field_name: str) -> str:
	"""Selector matching an input by name, placeholder or aria-label"""
	escaped = field_name.replace('"', '\\"')
	return f'[name="{escaped}"], [placeholder*="{escaped}" i], [aria-label*="{escaped}" i]'
