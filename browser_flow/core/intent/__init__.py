"""Intent parsing module"""

from .service import IntentParser
from .inference import ChatModelInferenceClient, InferencePrompt, LanguageInferenceClient
from .views import (
	CommandIntent, CommandPattern, CommandComplexity, RiskLevel, EntityKind, Entity,
	ParsedCommand, ParsingResult, ParsingContext, ElementInfo, LanguageDetection,
	InferenceResponse, ParseSource
)

__all__ = [
	'IntentParser', 'ChatModelInferenceClient', 'InferencePrompt', 'LanguageInferenceClient',
	'CommandIntent', 'CommandPattern', 'CommandComplexity', 'RiskLevel', 'EntityKind', 'Entity',
	'ParsedCommand', 'ParsingResult', 'ParsingContext', 'ElementInfo', 'LanguageDetection',
	'InferenceResponse', 'ParseSource'
]
