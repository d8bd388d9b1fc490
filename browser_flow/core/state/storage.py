"""Durable key/value stores used by the state tracker"""

import asyncio
import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Optional, Protocol, Union, runtime_checkable

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)


@runtime_checkable
class StateStore(Protocol):
	"""Opaque blob storage keyed by string; values must be JSON-serializable"""

	async def get(self, key: str) -> Optional[Any]:
		...

	async def set(self, key: str, value: Any) -> None:
		...

	async def delete(self, key: str) -> None:
		...

	async def keys(self, prefix: str = "") -> list[str]:
		...


class InMemoryStateStore:
	"""Process-local store; values are copied in and out"""

	def __init__(self):
		self._data: dict[str, Any] = {}

	async def get(self, key: str) -> Optional[Any]:
		value = self._data.get(key)
		return copy.deepcopy(value) if value is not None else None

	async def set(self, key: str, value: Any) -> None:
		self._data[key] = copy.deepcopy(value)

	async def delete(self, key: str) -> None:
		self._data.pop(key, None)

	async def keys(self, prefix: str = "") -> list[str]:
		return [key for key in self._data if key.startswith(prefix)]

	def __len__(self) -> int:
		return len(self._data)


class JsonFileStateStore:
	"""One JSON file per key inside a directory"""

	def __init__(self, directory: Union[str, Path]):
		self.directory = Path(directory)
		self.directory.mkdir(parents=True, exist_ok=True)
		self._lock = asyncio.Lock()

	def _path(self, key: str) -> Path:
		safe = re.sub(r'[^A-Za-z0-9_.-]', '_', key)
		return self.directory / f"{safe}.json"

	async def get(self, key: str) -> Optional[Any]:
		path = self._path(key)
		if not path.exists():
			return None
		async with aiofiles.open(path, "r") as f:
			content = await f.read()
		try:
			return json.loads(content)
		except json.JSONDecodeError:
			logger.warning(f"Corrupt state file {path}, ignoring it")
			return None

	async def set(self, key: str, value: Any) -> None:
		path = self._path(key)
		tmp_path = path.with_suffix('.json.tmp')
		async with self._lock:
			async with aiofiles.open(tmp_path, "w") as f:
				await f.write(json.dumps(value, indent=2))
			await aiofiles.os.replace(tmp_path, path)

	async def delete(self, key: str) -> None:
		path = self._path(key)
		async with self._lock:
			if path.exists():
				await aiofiles.os.remove(path)

	async def keys(self, prefix: str = "") -> list[str]:
		return sorted(p.stem for p in self.directory.glob("*.json") if p.stem.startswith(prefix))
