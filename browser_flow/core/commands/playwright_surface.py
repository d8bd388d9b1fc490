"""Execution surface backed by a playwright browser context"""

import base64
import logging
from typing import Any, Awaitable, Callable, Optional

from playwright.async_api import BrowserContext, Page
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from browser_flow.core.errors import ErrorCode

from .views import (
	ClickCommand, CloseTabCommand, Command, CreateTabCommand, ExecutionResponse,
	ExtractTextCommand, FillCommand, NavigateCommand, ScreenshotCommand, ScrollCommand,
	SwitchTabCommand, TypeCommand, WaitCommand, WaitForElementCommand,
)

logger = logging.getLogger(__name__)

ELEMENT_NOT_FOUND = "ELEMENT_NOT_FOUND"


class PlaywrightExecutionSurface:
	"""Runs commands against the pages of one browser context

	Tabs are addressed by their index in ``context.pages``.
	"""

	def __init__(self, context: BrowserContext, default_timeout_ms: int = 30000):
		self.context = context
		self.default_timeout_ms = default_timeout_ms
		self._active_tab = 0
		self._handlers: dict[str, Callable[[Any], Awaitable[Any]]] = {
			'navigate': self._navigate,
			'click': self._click,
			'fill': self._fill,
			'type': self._type,
			'scroll': self._scroll,
			'wait': self._wait,
			'waitForElement': self._wait_for_element,
			'extractText': self._extract_text,
			'screenshot': self._screenshot,
			'createTab': self._create_tab,
			'closeTab': self._close_tab,
			'switchTab': self._switch_tab,
		}

	@property
	def active_tab(self) -> int:
		return self._active_tab

	def _page(self, tab_id: Optional[int] = None) -> Page:
		pages = self.context.pages
		index = self._active_tab if tab_id is None else tab_id
		if not pages or index < 0 or index >= len(pages):
			raise PlaywrightError(f"Tab {index} does not exist")
		return pages[index]

	def _timeout(self, command: Command) -> int:
		return command.timeout or self.default_timeout_ms

	async def execute(self, command: Command) -> ExecutionResponse:
		"""Execute one command and convert playwright failures into responses"""
		handler = self._handlers.get(command.type)
		if handler is None:
			return ExecutionResponse.fail(
				command.id,
				ErrorCode.COMMAND_EXECUTION_FAILED,
				f"Unsupported command type: {command.type}",
			)

		try:
			data = await handler(command)
			logger.debug(f"Executed {command.describe()}")
			return ExecutionResponse.ok(command.id, data)
		except PlaywrightTimeout as e:
			selector = getattr(command, 'selector', None)
			if selector:
				return ExecutionResponse.fail(
					command.id,
					ELEMENT_NOT_FOUND,
					f"Element not found: {selector}",
					{'selector': selector, 'playwright_error': str(e)},
				)
			return ExecutionResponse.fail(command.id, ErrorCode.STEP_TIMEOUT, str(e))
		except PlaywrightError as e:
			logger.debug(f"Command {command.type} failed: {e}")
			return ExecutionResponse.fail(command.id, ErrorCode.COMMAND_EXECUTION_FAILED, str(e))

	async def _navigate(self, command: NavigateCommand) -> dict[str, Any]:
		page = self._page(command.tab_id)
		await page.goto(command.url, wait_until=command.wait_until, timeout=self._timeout(command))
		return {'url': page.url, 'title': await page.title()}

	async def _click(self, command: ClickCommand) -> dict[str, Any]:
		page = self._page(command.tab_id)
		await page.click(
			command.selector,
			button=command.button,
			click_count=command.click_count,
			timeout=self._timeout(command),
		)
		return {'selector': command.selector}

	async def _fill(self, command: FillCommand) -> dict[str, Any]:
		page = self._page(command.tab_id)
		await page.fill(command.selector, command.value, timeout=self._timeout(command))
		return {'selector': command.selector}

	async def _type(self, command: TypeCommand) -> dict[str, Any]:
		page = self._page(command.tab_id)
		await page.type(command.selector, command.text, delay=command.delay or 0, timeout=self._timeout(command))
		return {'selector': command.selector, 'length': len(command.text)}

	async def _scroll(self, command: ScrollCommand) -> dict[str, Any]:
		page = self._page(command.tab_id)
		if command.position == 'top':
			await page.evaluate("window.scrollTo(0, 0)")
		elif command.position == 'bottom':
			await page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
		else:
			if command.selector:
				await page.hover(command.selector, timeout=self._timeout(command))
			dx, dy = {
				'up': (0, -command.amount),
				'down': (0, command.amount),
				'left': (-command.amount, 0),
				'right': (command.amount, 0),
			}[command.direction]
			await page.mouse.wheel(dx, dy)
		return {'scroll_y': await page.evaluate("window.scrollY")}

	async def _wait(self, command: WaitCommand) -> dict[str, Any]:
		await self._page(command.tab_id).wait_for_timeout(command.duration)
		return {'waited_ms': command.duration}

	async def _wait_for_element(self, command: WaitForElementCommand) -> dict[str, Any]:
		page = self._page(command.tab_id)
		await page.wait_for_selector(command.selector, state=command.state, timeout=self._timeout(command))
		return {'selector': command.selector, 'state': command.state}

	async def _extract_text(self, command: ExtractTextCommand) -> Any:
		page = self._page(command.tab_id)
		if command.multiple:
			return await page.locator(command.selector).all_inner_texts()
		return await page.inner_text(command.selector, timeout=self._timeout(command))

	async def _screenshot(self, command: ScreenshotCommand) -> dict[str, Any]:
		page = self._page(command.tab_id)
		if command.selector:
			image = await page.locator(command.selector).screenshot(timeout=self._timeout(command))
		else:
			image = await page.screenshot(full_page=command.full_page, timeout=self._timeout(command))
		return {'image': base64.b64encode(image).decode('ascii'), 'format': 'png'}

	async def _create_tab(self, command: CreateTabCommand) -> dict[str, Any]:
		page = await self.context.new_page()
		tab_id = self.context.pages.index(page)
		if command.url:
			await page.goto(command.url, timeout=self._timeout(command))
		if command.active:
			await page.bring_to_front()
			self._active_tab = tab_id
		return {'tab_id': tab_id, 'url': page.url}

	async def _close_tab(self, command: CloseTabCommand) -> dict[str, Any]:
		tab_id = self._active_tab if command.tab_id is None else command.tab_id
		await self._page(tab_id).close()
		if self._active_tab >= tab_id and self._active_tab > 0:
			self._active_tab -= 1
		return {'tab_id': tab_id, 'remaining': len(self.context.pages)}

	async def _switch_tab(self, command: SwitchTabCommand) -> dict[str, Any]:
		page = self._page(command.tab_id)
		await page.bring_to_front()
		self._active_tab = command.tab_id
		return {'tab_id': command.tab_id, 'url': page.url}
