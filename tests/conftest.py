"""Fake Playwright page / locator objects shared by the tests."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError


@pytest.fixture
def no_sleep(monkeypatch):
    """Replace asyncio.sleep so fixed delays and polling finish instantly."""
    sleep = AsyncMock()
    monkeypatch.setattr(asyncio, "sleep", sleep)
    return sleep


class FakeLocator:
    def __init__(self, visible=False, text="", on_click=None):
        self.visible = visible
        self.text = text
        self.on_click = on_click
        self.clicks = 0
        self.filled = []
        self.children = {}

    @property
    def first(self):
        return self

    async def wait_for(self, state="visible", timeout=None):
        if state == "visible" and not self.visible:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded.")

    async def is_visible(self):
        return self.visible

    async def inner_text(self):
        return self.text

    async def fill(self, value):
        self.filled.append(value)

    async def click(self, timeout=None, **kwargs):
        if not self.visible:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded.")
        self.clicks += 1
        if self.on_click:
            self.on_click()

    def get_by_role(self, role, name=None):
        return self.children[(role, name)]


class FakeRenewalPage:
    """Scripted renewal page.

    ``script`` lists what happens after each confirm click:
    ``"success"`` hides the modal, ``"pending"`` leaves it open and
    any other string shows the not-yet-eligible status with that text.
    """

    def __init__(self, script=(), renew_visible=True, modal_opens=True, login_fails=False,
                 confirm_visible=True):
        self.script = list(script)
        self.confirms = 0
        self.reloads = 0
        self.modal_opens = modal_opens
        self.renew_button = FakeLocator(visible=renew_visible, on_click=self._open_modal)
        self.modal = FakeLocator()
        self.confirm_button = FakeLocator(visible=confirm_visible, on_click=self._confirm)
        self.modal.children[("button", "Renew")] = self.confirm_button
        self.status = FakeLocator()
        self.email = FakeLocator(visible=True)
        self.password = FakeLocator(visible=True)
        self.login_button = FakeLocator(visible=True)
        self.login_error = FakeLocator(visible=login_fails)
        self.see_link = FakeLocator(visible=True)
        self.add_init_script = AsyncMock()
        self.goto = AsyncMock()
        self.close = AsyncMock()
        self.screenshot = AsyncMock()
        self.frames = []

    def _open_modal(self):
        if self.modal_opens:
            self.modal.visible = True

    def _confirm(self):
        step = self.script[self.confirms] if self.confirms < len(self.script) else "pending"
        self.confirms += 1
        if step == "success":
            self.modal.visible = False
        elif step != "pending":
            self.status.visible = True
            self.status.text = step

    async def reload(self):
        self.reloads += 1
        self.modal.visible = False
        self.status.visible = False

    def locator(self, selector):
        return {
            "#renew-modal": self.modal,
            'input[type="password"]': self.password,
        }[selector]

    def get_by_role(self, role, name=None):
        return {
            ("button", "Renew"): self.renew_button,
            ("textbox", "Email"): self.email,
            ("button", "Login"): self.login_button,
            ("link", "See"): self.see_link,
        }[(role, name)]

    def get_by_text(self, text):
        return {
            "You can't renew your server yet": self.status,
            "Incorrect password or no account": self.login_error,
        }[text]


class FakeFrame:
    def __init__(self, payload=None, box=None, detached=False):
        self.payload = payload
        self.box = box
        self.detached = detached
        self.evaluate = AsyncMock(side_effect=self._evaluate)

    async def _evaluate(self, expression):
        if self.detached:
            raise PlaywrightError("Frame was detached")
        return self.payload

    async def frame_element(self):
        element = MagicMock()
        element.bounding_box = AsyncMock(return_value=self.box)
        return element


def make_cdp_page(frames, engine="chromium"):
    """Page mock whose context hands out a recording CDP session."""
    page = MagicMock()
    page.frames = frames
    page.context.browser.browser_type.name = engine
    session = MagicMock()
    session.send = AsyncMock()
    session.detach = AsyncMock()
    page.context.new_cdp_session = AsyncMock(return_value=session)
    page.mouse.move = AsyncMock()
    page.mouse.down = AsyncMock()
    page.mouse.up = AsyncMock()
    return page, session
