"""Shared helpers for timing and timestamps"""

import logging
import time
from datetime import datetime
from functools import wraps
from typing import Any, Callable

logger = logging.getLogger(__name__)


def time_execution_async(additional_text: str = '') -> Callable:
	"""Log how long the decorated coroutine took, at debug level"""
	def decorator(func: Callable) -> Callable:
		@wraps(func)
		async def wrapper(*args: Any, **kwargs: Any) -> Any:
			start_time = time.perf_counter()
			try:
				return await func(*args, **kwargs)
			finally:
				execution_time = time.perf_counter() - start_time
				logger.debug(f'{additional_text} Execution time: {execution_time:.3f} seconds')
		return wrapper
	return decorator


def time_execution_sync(additional_text: str = '') -> Callable:
	def decorator(func: Callable) -> Callable:
		@wraps(func)
		def wrapper(*args: Any, **kwargs: Any) -> Any:
			start_time = time.perf_counter()
			try:
				return func(*args, **kwargs)
			finally:
				execution_time = time.perf_counter() - start_time
				logger.debug(f'{additional_text} Execution time: {execution_time:.3f} seconds')
		return wrapper
	return decorator


def elapsed_ms(since: datetime) -> float:
	"""Milliseconds elapsed since a datetime.now() timestamp"""
	return (datetime.now() - since).total_seconds() * 1000
