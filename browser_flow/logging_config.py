import logging
import os
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: Optional[str] = None) -> logging.Logger:
	"""Attach a single stream handler to the browser_flow logger"""
	level_name = (level or os.getenv('BROWSER_FLOW_LOG_LEVEL', 'INFO')).upper()

	logger = logging.getLogger('browser_flow')
	logger.setLevel(getattr(logging, level_name, logging.INFO))

	# Calling twice must not double every line
	if not any(getattr(handler, '_browser_flow', False) for handler in logger.handlers):
		handler = logging.StreamHandler()
		handler.setFormatter(logging.Formatter(LOG_FORMAT))
		handler._browser_flow = True
		logger.addHandler(handler)

	logger.propagate = False
	logger.debug(f'Logging initialized at {level_name}')
	return logger
