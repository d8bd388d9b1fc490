"""Natural-language command parsing"""

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Optional, Union

from browser_flow.config import FlowConfig
from browser_flow.core.commands.views import WorkflowDefinition
from browser_flow.core.errors import ParsingError
from browser_flow.utils import elapsed_ms, time_execution_async, time_execution_sync

from .inference import InferencePrompt, LanguageInferenceClient, validate_inference_response
from .patterns import ABBREVIATIONS, DIRECTION_WORDS, DURATION_UNITS_MS, STOP_WORDS, default_patterns
from .views import (
	CommandComplexity, CommandIntent, CommandPattern, Entity, EntityKind,
	InferenceResponse, LanguageDetection, ParsedCommand, ParseSource,
	ParsingContext, ParsingResult, RiskLevel,
)

logger = logging.getLogger(__name__)

GROUP_ENTITY_KINDS = {
	'url': EntityKind.URL,
	'amount': EntityKind.NUMBER,
	'tab': EntityKind.NUMBER,
	'direction': EntityKind.DIRECTION,
	'position': EntityKind.DIRECTION,
	'target': EntityKind.TEXT,
	'query': EntityKind.TEXT,
	'field': EntityKind.TEXT,
	'value': EntityKind.TEXT,
}

INFERRED_INTENTS = {
	'navigate': CommandIntent.NAVIGATE,
	'goto': CommandIntent.NAVIGATE,
	'click': CommandIntent.CLICK,
	'fill': CommandIntent.FILL,
	'type': CommandIntent.FILL,
	'search': CommandIntent.SEARCH,
	'scroll': CommandIntent.SCROLL,
	'extract': CommandIntent.EXTRACT,
	'extracttext': CommandIntent.EXTRACT,
	'wait': CommandIntent.WAIT,
	'wait_for_element': CommandIntent.WAIT_FOR_ELEMENT,
	'waitforelement': CommandIntent.WAIT_FOR_ELEMENT,
	'screenshot': CommandIntent.SCREENSHOT,
	'new_tab': CommandIntent.NEW_TAB,
	'createtab': CommandIntent.NEW_TAB,
	'close_tab': CommandIntent.CLOSE_TAB,
	'closetab': CommandIntent.CLOSE_TAB,
	'switch_tab': CommandIntent.SWITCH_TAB,
	'switchtab': CommandIntent.SWITCH_TAB,
	'submit': CommandIntent.SUBMIT,
}

INTENT_CAPABILITIES = {
	CommandIntent.NAVIGATE: ['navigation'],
	CommandIntent.CLICK: ['dom_access', 'user_interaction'],
	CommandIntent.FILL: ['dom_access', 'form_interaction'],
	CommandIntent.SEARCH: ['navigation'],
	CommandIntent.SCROLL: ['dom_access'],
	CommandIntent.EXTRACT: ['dom_access', 'data_extraction'],
	CommandIntent.WAIT: [],
	CommandIntent.WAIT_FOR_ELEMENT: ['dom_access'],
	CommandIntent.SCREENSHOT: ['screen_capture'],
	CommandIntent.NEW_TAB: ['tab_management'],
	CommandIntent.CLOSE_TAB: ['tab_management'],
	CommandIntent.SWITCH_TAB: ['tab_management'],
	CommandIntent.SUBMIT: ['dom_access', 'form_interaction'],
	CommandIntent.UNKNOWN: [],
}

PARAMETER_CAPABILITIES = {
	'url': 'navigation',
	'selector': 'dom_access',
	'value': 'form_interaction',
}

INTENT_RISK = {
	CommandIntent.SUBMIT: RiskLevel.MEDIUM,
	CommandIntent.CLOSE_TAB: RiskLevel.MEDIUM,
}

COMPLEXITY_WEIGHTS = {
	'url': 1,
	'query': 1,
	'value': 1,
	'selector': 2,
	'target': 2,
	'field': 2,
	'options': 2,
}

SENSITIVE_MARKERS = ('password', 'passwd', 'secret', 'token', 'credit card', 'card number', 'ssn')


def assess_complexity(parameters: dict[str, Any]) -> CommandComplexity:
	score = sum(COMPLEXITY_WEIGHTS.get(key, 1) for key, value in parameters.items() if value not in (None, ''))
	if score <= 2:
		return CommandComplexity.SIMPLE
	if score <= 4:
		return CommandComplexity.MODERATE
	return CommandComplexity.COMPLEX


def required_capabilities(intent: CommandIntent, parameters: dict[str, Any]) -> list[str]:
	capabilities = list(INTENT_CAPABILITIES.get(intent, []))
	for key in parameters:
		capability = PARAMETER_CAPABILITIES.get(key)
		if capability and capability not in capabilities:
			capabilities.append(capability)
	return capabilities


def assess_risk(intent: CommandIntent, parameters: dict[str, Any]) -> RiskLevel:
	"""Coarse risk used to gate confirmation; secrets and plain http raise it"""
	score = 0
	url = str(parameters.get('url') or '')
	if url.startswith('http://'):
		score += 1
	haystack = ' '.join(f"{k} {v}" for k, v in parameters.items()).lower()
	if 'password' in haystack:
		score += 2
	if parameters.get('sensitive') or any(marker in haystack for marker in SENSITIVE_MARKERS if marker != 'password'):
		score += 2

	if score >= 3:
		parameter_risk = RiskLevel.HIGH
	elif score >= 1:
		parameter_risk = RiskLevel.MEDIUM
	else:
		parameter_risk = RiskLevel.LOW

	order = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH]
	return max(INTENT_RISK.get(intent, RiskLevel.LOW), parameter_risk, key=order.index)


def _with_scheme(url: str) -> str:
	return url if re.match(r'^https?://', url, re.IGNORECASE) else f"https://{url}"


class IntentParser:
	"""Turns free-form text into commands

	Patterns run first; remote inference is consulted only when no pattern is
	confident, and the two results are merged. ``parse`` never raises.
	"""

	def __init__(
		self,
		inference_client: Optional[LanguageInferenceClient] = None,
		config: Optional[FlowConfig] = None,
		patterns: Optional[list[CommandPattern]] = None,
		context: Optional[ParsingContext] = None,
	):
		self.config = config or FlowConfig()
		self.inference_client = inference_client
		self._patterns: list[CommandPattern] = list(patterns) if patterns is not None else default_patterns()
		self._context = context or ParsingContext()
		self._language: Optional[str] = None

	# Catalog and context management

	def add_pattern(self, pattern: CommandPattern) -> None:
		self._patterns.append(pattern)

	def remove_pattern(self, pattern_id: str) -> bool:
		for index, pattern in enumerate(self._patterns):
			if pattern.id == pattern_id:
				del self._patterns[index]
				return True
		return False

	def get_patterns(self) -> list[CommandPattern]:
		return list(self._patterns)

	@property
	def context(self) -> ParsingContext:
		return self._context

	def update_context(self, **fields: Any) -> ParsingContext:
		"""Merge fields into the default context used when parse gets none"""
		self._context = ParsingContext.model_validate({**self._context.model_dump(), **fields})
		return self._context

	def set_language(self, language: Optional[str]) -> None:
		"""Force a language, or pass None to go back to detection"""
		if language is not None and language not in self.config.supported_languages:
			raise ValueError(f"Unsupported language: {language}")
		self._language = language

	# Parsing

	@time_execution_async("intent_parse")
	async def parse(
		self,
		text: str,
		context: Optional[Union[ParsingContext, dict[str, Any]]] = None,
	) -> ParsingResult:
		"""Parse one instruction; failures come back as a zero-confidence clarification request"""
		start_time = datetime.now()
		try:
			result = await self._parse(text, self._resolve_context(context))
		except Exception as e:
			logger.warning(f"Parsing failed for {text!r}: {e}")
			result = ParsingResult(
				confidence=0.0,
				requires_clarification=True,
				errors=[f"Parsing failed: {e}"],
			)
		result.processing_time_ms = elapsed_ms(start_time)
		return result

	def _resolve_context(self, context: Optional[Union[ParsingContext, dict[str, Any]]]) -> ParsingContext:
		if context is None:
			return self._context
		if isinstance(context, ParsingContext):
			return context
		return ParsingContext.model_validate(context)

	async def _parse(self, text: str, context: ParsingContext) -> ParsingResult:
		if not text or not text.strip():
			return ParsingResult(
				confidence=0.0,
				requires_clarification=True,
				errors=["Empty command"],
				clarification_questions=["What would you like me to do?"],
			)

		detection = self._detect_for(text, context)
		normalized = self.normalize(text, detection.language)
		logger.debug(f"Normalized {text!r} -> {normalized!r} ({detection.language})")

		pattern_result = self.match_patterns(normalized, context, detection.language)

		if pattern_result.confidence > self.config.pattern_confidence_threshold:
			result = pattern_result
		else:
			inference_result = await self._infer(normalized, context, detection.language)
			result = self.merge_results(pattern_result, inference_result)

		result.language = detection
		result.normalized_text = normalized
		self._derive_workflows(result, text)
		logger.debug(
			f"Parsed {text!r}: {len(result.commands)} command(s), confidence={result.confidence:.2f}, "
			f"source={result.source.value}"
		)
		return result

	def _detect_for(self, text: str, context: ParsingContext) -> LanguageDetection:
		forced = context.language or self._language
		if forced:
			return LanguageDetection(language=forced, confidence=1.0)
		return self.detect_language(text)

	def detect_language(self, text: str) -> LanguageDetection:
		"""Stop-word frequency vote over the supported languages"""
		tokens = re.findall(r"[\wÀ-ÿ']+", text.lower())
		scores = {
			language: sum(1 for token in tokens if token in STOP_WORDS.get(language, frozenset()))
			for language in self.config.supported_languages
		}
		total = sum(scores.values())
		fallback = self.config.fallback_language

		if total == 0:
			return LanguageDetection(language=fallback, confidence=0.5)

		best_score = max(scores.values())
		leaders = [language for language, score in scores.items() if score == best_score]
		if len(leaders) > 1:
			language = fallback if fallback in leaders else leaders[0]
		else:
			language = leaders[0]

		alternatives = sorted(
			((lang, round(score / total, 3)) for lang, score in scores.items() if lang != language and score > 0),
			key=lambda item: item[1],
			reverse=True,
		)
		return LanguageDetection(
			language=language,
			confidence=round(best_score / total, 3),
			alternatives=alternatives,
		)

	def normalize(self, text: str, language: str = "en") -> str:
		"""Lower-case everything but URLs, collapse whitespace and expand abbreviations"""
		tokens = []
		for token in text.strip().split():
			if re.match(r'^https?://', token, re.IGNORECASE):
				tokens.append(token)
			else:
				tokens.append(token.lower())
		normalized = ' '.join(tokens).rstrip('.!?')

		for regex, replacement in ABBREVIATIONS.get(language, []):
			normalized = regex.sub(replacement, normalized)

		return re.sub(r'\s+', ' ', normalized).strip()

	@time_execution_sync("match_patterns")
	def match_patterns(
		self,
		normalized: str,
		context: Optional[ParsingContext] = None,
		language: str = "en",
	) -> ParsingResult:
		"""Best single pattern match, or a zero-confidence result asking for clarification"""
		context = context or self._context
		best: Optional[tuple[float, CommandPattern, re.Match, list[Entity]]] = None

		for pattern in self._patterns:
			if pattern.language not in (language, 'en'):
				continue
			match = pattern.regex.search(normalized)
			if not match:
				continue
			entities = self._extract_entities(match)
			confidence = self._score(pattern, match, normalized, entities, context)
			if best is None or confidence > best[0]:
				best = (confidence, pattern, match, entities)

		if best is None:
			return ParsingResult(
				confidence=0.0,
				requires_clarification=True,
				source=ParseSource.PATTERN,
				warnings=["No pattern matched"],
			)

		confidence, pattern, match, entities = best
		parameters = self._extract_parameters(pattern.intent, match)
		command = self._annotate(ParsedCommand(
			intent=pattern.intent,
			parameters=parameters,
			confidence=confidence,
			source=ParseSource.PATTERN,
			pattern_id=pattern.id,
			original_text=normalized,
			entities=entities,
		))
		return ParsingResult(
			commands=[command],
			confidence=confidence,
			requires_clarification=confidence < self.config.clarification_threshold,
			source=ParseSource.PATTERN,
		)

	def _score(
		self,
		pattern: CommandPattern,
		match: re.Match,
		normalized: str,
		entities: list[Entity],
		context: ParsingContext,
	) -> float:
		coverage = (match.end() - match.start()) / max(len(normalized), 1)
		confidence = pattern.confidence * (0.5 + 0.5 * coverage)

		found = {entity.kind for entity in entities}
		if any(kind not in found for kind in pattern.required_entities):
			confidence *= 0.7

		# Already on a page, so "open x" may mean something on it
		if pattern.intent == CommandIntent.NAVIGATE and context.current_url:
			confidence *= 0.8

		return round(min(1.0, confidence), 4)

	def _extract_entities(self, match: re.Match) -> list[Entity]:
		entities = []
		for name, value in match.groupdict().items():
			kind = GROUP_ENTITY_KINDS.get(name)
			if kind is None or value is None or not value.strip():
				continue
			entities.append(Entity(kind=kind, value=value.strip(), start=match.start(name), end=match.end(name)))
		return entities

	def _extract_parameters(self, intent: CommandIntent, match: re.Match) -> dict[str, Any]:
		groups = {k: v.strip() for k, v in match.groupdict().items() if v is not None and v.strip()}
		parameters: dict[str, Any] = {}

		if intent in (CommandIntent.NAVIGATE, CommandIntent.NEW_TAB):
			if 'url' in groups:
				parameters['url'] = _with_scheme(groups['url'])
			if 'query' in groups:
				parameters['query'] = groups['query']
		elif intent == CommandIntent.SEARCH:
			parameters['query'] = groups.get('query', '')
			if 'engine' in groups:
				parameters['engine'] = groups['engine']
		elif intent in (CommandIntent.CLICK, CommandIntent.EXTRACT, CommandIntent.WAIT_FOR_ELEMENT):
			parameters['target'] = groups.get('target', '')
		elif intent == CommandIntent.FILL:
			parameters['field'] = groups.get('field', '')
			parameters['value'] = groups.get('value', '')
		elif intent == CommandIntent.SCROLL:
			if 'position' in groups:
				parameters['position'] = groups['position']
			else:
				direction = groups.get('direction', 'down')
				parameters['direction'] = DIRECTION_WORDS.get(direction, direction)
				if 'amount' in groups:
					parameters['amount'] = int(groups['amount'])
		elif intent == CommandIntent.WAIT:
			unit = groups.get('unit', 's')
			parameters['duration'] = int(float(groups['amount']) * DURATION_UNITS_MS.get(unit, 1000))
		elif intent == CommandIntent.SCREENSHOT:
			parameters['full_page'] = bool(groups.get('full') or groups.get('scope'))
		elif intent in (CommandIntent.CLOSE_TAB, CommandIntent.SWITCH_TAB):
			# Users count tabs from 1
			if 'tab' in groups:
				parameters['tab_id'] = max(int(groups['tab']) - 1, 0)

		return parameters

	def _annotate(self, command: ParsedCommand) -> ParsedCommand:
		command.complexity = assess_complexity(command.parameters)
		command.required_capabilities = required_capabilities(command.intent, command.parameters)
		command.risk_level = assess_risk(command.intent, command.parameters)
		return command

	# Inference

	async def _infer(self, normalized: str, context: ParsingContext, language: str) -> ParsingResult:
		if self.inference_client is None:
			return ParsingResult(
				confidence=0.0,
				source=ParseSource.INFERENCE,
				warnings=["No inference client configured"],
			)

		prompt = InferencePrompt.build(normalized, context, language)
		timeout_ms = self.config.inference_timeout_ms
		try:
			raw = await asyncio.wait_for(self.inference_client.infer(prompt), timeout=timeout_ms / 1000)
			response = validate_inference_response(raw)
		except asyncio.TimeoutError:
			logger.warning(f"Inference timed out after {timeout_ms}ms")
			return self._failed_inference(f"Inference timed out after {timeout_ms}ms")
		except ParsingError as e:
			logger.warning(f"Malformed inference response: {e}")
			return self._failed_inference(str(e))
		except Exception as e:
			logger.warning(f"Inference failed: {type(e).__name__}: {e}")
			return self._failed_inference(f"Inference failed: {e}")

		return self.from_inference(response, normalized)

	def _failed_inference(self, error: str) -> ParsingResult:
		return ParsingResult(
			confidence=0.0,
			requires_clarification=True,
			source=ParseSource.INFERENCE,
			errors=[error],
		)

	def from_inference(self, response: InferenceResponse, normalized: str = "") -> ParsingResult:
		"""Convert a validated inference reply into a parsing result"""
		commands = []
		warnings = []
		for inferred in response.commands:
			intent = INFERRED_INTENTS.get(inferred.type.lower(), CommandIntent.UNKNOWN)
			if intent == CommandIntent.UNKNOWN:
				warnings.append(f"Unsupported inferred command type: {inferred.type}")

			parameters = {**(inferred.model_extra or {}), **inferred.parameters}
			if intent == CommandIntent.FILL and 'value' not in parameters and 'text' in parameters:
				parameters['value'] = parameters.pop('text')
			if intent in (CommandIntent.NAVIGATE, CommandIntent.NEW_TAB) and parameters.get('url'):
				parameters['url'] = _with_scheme(str(parameters['url']))

			commands.append(self._annotate(ParsedCommand(
				intent=intent,
				parameters=parameters,
				confidence=inferred.confidence if inferred.confidence is not None else response.confidence,
				source=ParseSource.INFERENCE,
				original_text=normalized,
			)))

		questions = [response.clarification_question] if response.clarification_question else []
		return ParsingResult(
			commands=commands,
			confidence=response.confidence,
			requires_clarification=response.requires_clarification or response.confidence < self.config.clarification_threshold,
			clarification_questions=questions,
			source=ParseSource.INFERENCE,
			warnings=warnings,
		)

	# Merge

	def merge_results(self, pattern_result: ParsingResult, inference_result: ParsingResult) -> ParsingResult:
		"""Prefer clearly better inference, then confident patterns, otherwise combine both"""
		pattern_confidence = pattern_result.confidence
		inference_confidence = inference_result.confidence

		if inference_confidence > pattern_confidence + self.config.ai_preference_margin:
			return self._carry_diagnostics(inference_result, pattern_result)
		if pattern_confidence > self.config.pattern_confidence_threshold:
			return self._carry_diagnostics(pattern_result, inference_result)

		commands: list[ParsedCommand] = []
		seen: set[tuple] = set()
		for command in pattern_result.commands + inference_result.commands:
			key = command.dedupe_key()
			if key not in seen:
				seen.add(key)
				commands.append(command)

		confidence = max(pattern_confidence, inference_confidence)
		requires_clarification = confidence < self.config.clarification_threshold
		questions: list[str] = []
		if requires_clarification:
			for question in inference_result.clarification_questions + pattern_result.clarification_questions:
				if question not in questions:
					questions.append(question)

		return ParsingResult(
			commands=commands,
			confidence=confidence,
			requires_clarification=requires_clarification,
			clarification_questions=questions,
			errors=pattern_result.errors + inference_result.errors,
			warnings=pattern_result.warnings + inference_result.warnings,
			source=ParseSource.COMBINED,
		)

	def _carry_diagnostics(self, chosen: ParsingResult, other: ParsingResult) -> ParsingResult:
		return chosen.model_copy(update={
			'errors': chosen.errors + [e for e in other.errors if e not in chosen.errors],
			'warnings': chosen.warnings + [w for w in other.warnings if w not in chosen.warnings],
		})

	def _derive_workflows(self, result: ParsingResult, text: str) -> None:
		steps = result.executable_commands(self.config.default_search_engine)
		if len(steps) > 1:
			result.workflows = [WorkflowDefinition(
				name=f"Parsed: {text.strip()[:50]}",
				steps=steps,
				context={'original_text': text},
			)]
