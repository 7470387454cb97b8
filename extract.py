import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import List, Optional

from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)
BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--single-process",
    "--disable-gpu",
    "--ignore-certificate-errors",
]

LAUNCH_TIMEOUT = 10  # seconds
MARKER_TIMEOUT = 15000  # ms
MARKER = "RainGraph.create({"
CAPTION_SELECTOR = 'p[data-component="rainGraph-nowcastText"]'
NO_CAPTION = "no text found"

MARKER_PRESENT_JS = """
marker => [...document.querySelectorAll('script')].some(s => s.textContent.includes(marker))
""".strip()
MARKER_LINES_JS = """
marker => {
    for (const script of document.querySelectorAll('script')) {
        if (script.textContent.includes(marker)) {
            return script.textContent.split('\\n');
        }
    }
    return null;
}
""".strip()
CAPTION_JS = """
selector => {
    const element = document.querySelector(selector);
    return element ? element.textContent : null;
}
""".strip()


class LaunchError(Exception):
    """The headless browser could not be started."""


class NavigationTimeout(Exception):
    """The forecast page never produced the chart script."""


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    LAUNCHING = "launching"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class PageContent:
    lines: List[str]
    caption: str


class RenderSession:
    """
    One long-lived headless Chromium, one open page at a time.

    Launch is bounded by a watchdog; a launch that fails or times out leaves
    the session FAILED and is never retried.
    """

    def __init__(self, executable_path: Optional[str] = None,
                 launch_timeout: float = LAUNCH_TIMEOUT,
                 logger: Optional[logging.Logger] = None,
                 playwright_factory=async_playwright):
        self.executable_path = executable_path
        self.launch_timeout = launch_timeout
        self.logger = logger or logging.getLogger(__name__)
        self.state = SessionState.UNINITIALIZED
        self._playwright_factory = playwright_factory
        self._playwright = None
        self._browser = None
        self._page = None

    async def _launch(self):
        self._playwright = await self._playwright_factory().start()
        return await self._playwright.chromium.launch(
            headless=True,
            executable_path=self.executable_path,
            args=BROWSER_ARGS,
        )

    async def launch(self):
        if self.state is not SessionState.UNINITIALIZED:
            raise LaunchError(f"session already {self.state.value}")
        self.state = SessionState.LAUNCHING
        browser_name = self.executable_path or "playwright default"
        self.logger.info(f"Launching browser {browser_name}")
        try:
            self._browser = await asyncio.wait_for(self._launch(), timeout=self.launch_timeout)
        except asyncio.TimeoutError as e:
            self.state = SessionState.FAILED
            raise LaunchError(f"timeout connecting to browser {browser_name}") from e
        except Exception as e:
            self.state = SessionState.FAILED
            raise LaunchError(f"error launching browser {browser_name} - {e}") from e
        self.state = SessionState.READY
        return self

    async def open_page(self):
        if self.state is not SessionState.READY:
            raise RuntimeError(f"session is {self.state.value}, not ready")
        if self._page is not None:
            raise RuntimeError("a page is already open")
        self.logger.debug("creating new page ...")
        self._page = await self._browser.new_page(user_agent=USER_AGENT)
        return self._page

    async def close_page(self, page):
        try:
            await page.close()
        finally:
            if page is self._page:
                self._page = None

    async def teardown(self):
        """Close every open page and the browser. No-op if never launched."""
        if self._browser is not None:
            self.logger.debug("destroy browser")
            for context in list(self._browser.contexts):
                for page in list(context.pages):
                    await page.close()
            self._page = None
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        if self.state is SessionState.READY:
            self.state = SessionState.CLOSED


async def fetch_page(session: RenderSession, url: str, logger: Optional[logging.Logger] = None) -> PageContent:
    """
    EXTRACT LAYER:
    Renders the forecast page and returns the chart script lines and caption.
    The page is closed before returning, whatever happens.
    """
    logger = logger or logging.getLogger(__name__)
    logger.debug(f"Reading data from : {url}")
    page = await session.open_page()
    try:
        try:
            await page.goto(url, wait_until="networkidle")
            await page.wait_for_function(MARKER_PRESENT_JS, arg=MARKER, timeout=MARKER_TIMEOUT)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(f"chart script did not appear on {url}") from e

        logger.debug("chart script loaded, evaluate page")
        lines = await page.evaluate(MARKER_LINES_JS, MARKER) or []
        caption = await page.evaluate(CAPTION_JS, CAPTION_SELECTOR)
        if caption is None:
            caption = NO_CAPTION
        logger.debug(f'got labeltext "{caption}"')
        return PageContent(lines, caption)
    finally:
        await session.close_page(page)
