"""Default pattern catalog and per-language lexical tables"""

import re
from typing import Optional

from .views import CommandIntent, CommandPattern, EntityKind

URL_RE = r'(?:https?://\S+|www\.\S+|[\w-]+(?:\.[\w-]+)*\.[a-z]{2,}(?:/\S*)?)'


def _p(
	id: str,
	regex: str,
	intent: CommandIntent,
	confidence: float,
	required: Optional[list[EntityKind]] = None,
	optional: Optional[list[EntityKind]] = None,
	examples: Optional[list[str]] = None,
	language: str = "en",
) -> CommandPattern:
	return CommandPattern(
		id=id,
		regex=re.compile(regex, re.IGNORECASE),
		intent=intent,
		confidence=confidence,
		required_entities=required or [],
		optional_entities=optional or [],
		examples=examples or [],
		language=language,
	)


def default_patterns() -> list[CommandPattern]:
	"""Fresh copy of the built-in catalog; patterns run on normalized text"""
	return [
		_p(
			'navigate_to_url',
			rf'\b(?:navigate to|open|visit)\s+(?P<url>{URL_RE})$',
			CommandIntent.NAVIGATE, 0.9,
			required=[EntityKind.URL],
			examples=["go to https://example.com", "open github.com"],
		),
		_p(
			'navigate_search',
			r'\b(?:navigate to|open|visit)\s+(?!https?://)(?:the\s+)?(?P<query>.+?)(?:\s+(?:website|site|page))?$',
			CommandIntent.NAVIGATE, 0.7,
			required=[EntityKind.TEXT],
			examples=["go to the weather site"],
		),
		_p(
			'click_element',
			r'\b(?:click on|press|tap)\s+(?:the\s+)?(?P<target>.+?)(?:\s+(?:button|link|element|icon))?$',
			CommandIntent.CLICK, 0.8,
			required=[EntityKind.TEXT],
			examples=["click the login button", "press submit"],
		),
		_p(
			'fill_form',
			r'\b(?:fill in|fill|type|enter|put)\s+(?P<value>.+?)\s+in(?:to)?\s+(?:the\s+)?(?P<field>.+?)(?:\s+(?:field|input|box))?$',
			CommandIntent.FILL, 0.85,
			required=[EntityKind.TEXT],
			examples=["type hello into the search box", "enter john@example.com in email"],
		),
		_p(
			'fill_form_with',
			r'\bfill in\s+(?:the\s+)?(?P<field>.+?)(?:\s+(?:field|input|box))?\s+with\s+(?P<value>.+)$',
			CommandIntent.FILL, 0.85,
			required=[EntityKind.TEXT],
			examples=["fill in the email field with john@example.com"],
		),
		_p(
			'search_query',
			r'\b(?:search for|look up)\s+(?P<query>.+?)(?:\s+on\s+(?P<engine>google|bing|duckduckgo))?$',
			CommandIntent.SEARCH, 0.9,
			required=[EntityKind.TEXT],
			examples=["search for python tutorials", "search cats on bing"],
		),
		_p(
			'scroll_direction',
			r'\bscroll\s+(?P<direction>up|down|left|right)(?:\s+(?:by\s+)?(?P<amount>\d+)(?:\s*(?:px|pixels))?)?$',
			CommandIntent.SCROLL, 0.95,
			required=[EntityKind.DIRECTION],
			optional=[EntityKind.NUMBER],
			examples=["scroll down", "scroll up 300"],
		),
		_p(
			'scroll_to_edge',
			r'\bscroll\s+to\s+(?:the\s+)?(?P<position>top|bottom)(?:\s+of\s+(?:the\s+)?page)?$',
			CommandIntent.SCROLL, 0.95,
			required=[EntityKind.DIRECTION],
			examples=["scroll to the bottom"],
		),
		_p(
			'extract_data',
			r'\b(?:extract|get|grab|scrape|copy)\s+(?:all\s+)?(?:the\s+)?(?P<target>.+?)(?:\s+(?:from|on)\s+(?:the\s+|this\s+)?page)?$',
			CommandIntent.EXTRACT, 0.8,
			required=[EntityKind.TEXT],
			examples=["extract all links", "get the headings from this page"],
		),
		_p(
			'wait_duration',
			r'\bwait\s+(?:for\s+)?(?P<amount>\d+(?:\.\d+)?)\s*(?P<unit>ms|milliseconds?|s|secs?|seconds?|m|mins?|minutes?)?$',
			CommandIntent.WAIT, 0.95,
			required=[EntityKind.NUMBER],
			examples=["wait 3 seconds", "wait for 500ms"],
		),
		_p(
			'wait_for_element',
			r'\bwait\s+(?:for|until)\s+(?!\d)(?:the\s+)?(?P<target>.+?)(?:\s+(?:to\s+)?(?:appears?|is\s+visible|loads?))?$',
			CommandIntent.WAIT_FOR_ELEMENT, 0.85,
			required=[EntityKind.TEXT],
			examples=["wait for the results to appear"],
		),
		_p(
			'screenshot',
			r'\b(?:take\s+(?:a\s+)?)?(?:(?P<full>full[\s-]page)\s+)?(?:screenshot|screen\s*shot)(?:\s+of\s+(?:the\s+)?(?P<scope>full|whole|entire)\s+page)?$',
			CommandIntent.SCREENSHOT, 0.9,
			examples=["take a screenshot", "take a full page screenshot"],
		),
		_p(
			'new_tab',
			rf'\b(?:(?:open|create)\s+)?(?:a\s+)?new\s+tab(?:\s+(?:with|at|to|for)\s+(?P<url>{URL_RE}))?$',
			CommandIntent.NEW_TAB, 0.9,
			optional=[EntityKind.URL],
			examples=["open a new tab", "new tab with example.com"],
		),
		_p(
			'close_tab',
			r'\bclose\s+(?:the\s+|this\s+)?(?:current\s+)?tab(?:\s+(?P<tab>\d+))?$',
			CommandIntent.CLOSE_TAB, 0.9,
			optional=[EntityKind.NUMBER],
			examples=["close this tab", "close tab 2"],
		),
		_p(
			'switch_tab',
			r'\b(?:switch to|navigate to)\s+(?:the\s+)?tab\s+(?P<tab>\d+)$',
			CommandIntent.SWITCH_TAB, 0.9,
			required=[EntityKind.NUMBER],
			examples=["switch to tab 2"],
		),
		_p(
			'submit_form',
			r'\bsubmit(?:\s+(?:the\s+|this\s+)?form)?$',
			CommandIntent.SUBMIT, 0.85,
			examples=["submit the form"],
		),
		# Spanish
		_p(
			'navigate_to_url_es',
			rf'\b(?:ir a|ve a|abre|abrir|visita|navega a)\s+(?P<url>{URL_RE})$',
			CommandIntent.NAVIGATE, 0.9,
			required=[EntityKind.URL],
			language="es",
		),
		_p(
			'click_element_es',
			r'\b(?:haz clic en|pulsa|presiona)\s+(?:el\s+|la\s+)?(?P<target>.+?)(?:\s+(?:botón|enlace))?$',
			CommandIntent.CLICK, 0.8,
			required=[EntityKind.TEXT],
			language="es",
		),
		_p(
			'search_query_es',
			r'\bbusca(?:r)?\s+(?P<query>.+)$',
			CommandIntent.SEARCH, 0.85,
			required=[EntityKind.TEXT],
			language="es",
		),
		_p(
			'scroll_direction_es',
			r'\bdesplaza(?:r)?(?:\s+hacia)?\s+(?P<direction>arriba|abajo)$',
			CommandIntent.SCROLL, 0.9,
			required=[EntityKind.DIRECTION],
			language="es",
		),
		# French
		_p(
			'navigate_to_url_fr',
			rf'\b(?:va à|aller à|ouvre|ouvrir|visite)\s+(?P<url>{URL_RE})$',
			CommandIntent.NAVIGATE, 0.9,
			required=[EntityKind.URL],
			language="fr",
		),
		_p(
			'click_element_fr',
			r"\b(?:clique sur|cliquez sur|appuie sur)\s+(?:le\s+|la\s+|l')?(?P<target>.+?)(?:\s+(?:bouton|lien))?$",
			CommandIntent.CLICK, 0.8,
			required=[EntityKind.TEXT],
			language="fr",
		),
		_p(
			'search_query_fr',
			r'\b(?:cherche|recherche|rechercher)\s+(?P<query>.+)$',
			CommandIntent.SEARCH, 0.85,
			required=[EntityKind.TEXT],
			language="fr",
		),
		_p(
			'scroll_direction_fr',
			r'\bdéfile(?:r)?\s+vers\s+le\s+(?P<direction>haut|bas)$',
			CommandIntent.SCROLL, 0.9,
			required=[EntityKind.DIRECTION],
			language="fr",
		),
	]


# Rewrites applied during normalization; every rule leaves already-expanded text alone
ABBREVIATIONS: dict[str, list[tuple[re.Pattern, str]]] = {
	'en': [
		(re.compile(r'^please\s+|\s+please$'), ''),
		(re.compile(r'^go\s*to\b'), 'navigate to'),
		(re.compile(r'^click\b(?!\s+on\b)'), 'click on'),
		(re.compile(r'^search\b(?!\s+for\b)'), 'search for'),
		(re.compile(r'^scroll\b(?!\s+(?:up|down|left|right|to)\b)'), 'scroll down'),
		(re.compile(r'\bscreen\s+shot\b'), 'screenshot'),
	],
	'es': [
		(re.compile(r'^por favor\s+|\s+por favor$'), ''),
		(re.compile(r'(?<!haz )\bclic en\b'), 'haz clic en'),
	],
	'fr': [
		(re.compile(r"^s'il (?:te|vous) plaît\s+|\s+s'il (?:te|vous) plaît$"), ''),
		(re.compile(r'\bclic sur\b'), 'clique sur'),
	],
}

STOP_WORDS: dict[str, frozenset[str]] = {
	'en': frozenset({
		'the', 'a', 'an', 'to', 'on', 'in', 'and', 'for', 'of', 'is', 'with',
		'this', 'that', 'page', 'please', 'click', 'go', 'open', 'search', 'all',
	}),
	'es': frozenset({
		'el', 'la', 'los', 'las', 'de', 'en', 'y', 'un', 'una', 'por', 'para',
		'con', 'haz', 'clic', 'busca', 'ir', 'página', 'hacia',
	}),
	'fr': frozenset({
		'le', 'la', 'les', 'de', 'des', 'et', 'un', 'une', 'sur', 'pour', 'avec',
		'dans', 'va', 'clique', 'cherche', 'vers', 'page',
	}),
}

DIRECTION_WORDS = {
	'arriba': 'up',
	'abajo': 'down',
	'haut': 'up',
	'bas': 'down',
}

DURATION_UNITS_MS = {
	'ms': 1, 'millisecond': 1, 'milliseconds': 1,
	's': 1000, 'sec': 1000, 'secs': 1000, 'second': 1000, 'seconds': 1000,
	'm': 60000, 'min': 60000, 'mins': 60000, 'minute': 60000, 'minutes': 60000,
}
