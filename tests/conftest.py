"""
Pytest configuration, shared fixtures and Playwright fakes.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add the project root to sys.path so the flat modules import
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from extract import CAPTION_JS, MARKER_LINES_JS, RenderSession  # noqa: E402


@pytest.fixture(scope="session")
def fixtures_dir():
    """Get the fixtures directory path."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture(scope="session")
def script_lines(fixtures_dir):
    """Lines of a rendered RainGraph script block."""
    return (fixtures_dir / "raingraph_script.txt").read_text(encoding="utf-8").split("\n")


class FakeContext:
    def __init__(self, browser):
        self.browser = browser
        self.pages = []


class FakePage:
    def __init__(self, context, lines=None, caption=None, goto_error=None, wait_error=None):
        self.context = context
        self.lines = lines
        self.caption = caption
        self.goto_error = goto_error
        self.wait_error = wait_error
        self.visited = []
        self.closed = False

    async def goto(self, url, wait_until=None):
        self.visited.append((url, wait_until))
        if self.goto_error:
            raise self.goto_error

    async def wait_for_function(self, expression, arg=None, timeout=None):
        if self.wait_error:
            raise self.wait_error

    async def evaluate(self, expression, arg=None):
        if expression == MARKER_LINES_JS:
            return self.lines
        if expression == CAPTION_JS:
            return self.caption
        raise AssertionError("unexpected script")

    async def close(self):
        self.closed = True
        if self in self.context.pages:
            self.context.pages.remove(self)
        if self.context in self.context.browser.contexts:
            self.context.browser.contexts.remove(self.context)


class FakeBrowser:
    def __init__(self, **page_kwargs):
        self.page_kwargs = page_kwargs
        self.contexts = []
        self.user_agents = []
        self.opened = []
        self.closed = False

    async def new_page(self, user_agent=None):
        context = FakeContext(self)
        page = FakePage(context, **self.page_kwargs)
        context.pages.append(page)
        self.contexts.append(context)
        self.user_agents.append(user_agent)
        self.opened.append(page)
        return page

    async def close(self):
        self.closed = True


class FakePlaywright:
    def __init__(self, browser, launch_delay=0):
        self.browser = browser
        self.launch_delay = launch_delay
        self.chromium = self
        self.launch_kwargs = None
        self.stopped = False

    async def start(self):
        return self

    async def launch(self, **kwargs):
        if self.launch_delay:
            await asyncio.sleep(self.launch_delay)
        self.launch_kwargs = kwargs
        return self.browser

    async def stop(self):
        self.stopped = True


@pytest.fixture
def make_session():
    """Build a RenderSession wired to a fake Playwright."""
    def _make(launch_delay=0, launch_timeout=1, executable_path=None, **page_kwargs):
        browser = FakeBrowser(**page_kwargs)
        playwright = FakePlaywright(browser, launch_delay=launch_delay)
        session = RenderSession(
            executable_path,
            launch_timeout=launch_timeout,
            playwright_factory=lambda: playwright,
        )
        return session, browser, playwright
    return _make


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as unit test (no external dependencies)"
    )
