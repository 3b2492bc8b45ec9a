"""
Katabump 自动续期脚本 - Playwright + Turnstile CDP 点击版本
- 从 login.json（或 LOGIN_JSON 环境变量）读取账号，逐个登录并续期
- 续期弹窗里的 Turnstile 通过注入探针 + CDP 真实点击处理（见 turnstile_cdp.py）
- 每个账号最多尝试 MAX_ATTEMPTS 次，结果通过 Telegram 推送
- 单个账号出错不影响后续账号
"""
import asyncio
import html
import json
import logging
import os
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

import requests
from playwright.async_api import Page, Locator, async_playwright, TimeoutError as PlaywrightTimeoutError
from playwright_stealth import Stealth
from camoufox.async_api import AsyncCamoufox
from browserforge.fingerprints import Screen

from turnstile_cdp import (
    POLL_INTERVAL_SECONDS,
    PRESS_HOLD_SECONDS,
    SOLVER_ROUNDS,
    install_probe,
    solve_turnstile,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s %(message)s'
)
logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"⚠️ {name}={value!r} 不是整数，使用默认值 {default}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"⚠️ {name}={value!r} 不是数字，使用默认值 {default}")
        return default


# 配置
LOGIN_URL = os.environ.get('LOGIN_URL', 'https://dashboard.katabump.com/auth/login')
DASHBOARD_URL = os.environ.get('DASHBOARD_URL', 'https://dashboard.katabump.com/dashboard')
ACCOUNTS_FILE = os.environ.get('ACCOUNTS_FILE', os.path.join(os.path.dirname(os.path.abspath(__file__)), 'login.json'))
TELEGRAM_BOT_TOKEN = os.environ.get('TELEGRAM_BOT_TOKEN') or os.environ.get('TG_BOT_TOKEN')
TELEGRAM_CHAT_ID = os.environ.get('TELEGRAM_CHAT_ID') or os.environ.get('TG_CHAT_ID')
SCREENSHOT_DIR = os.environ.get('SCREENSHOT_DIR')
BROWSER_ENGINE = os.environ.get('BROWSER_ENGINE', 'chromium').strip().lower()
CI = os.environ.get('CI') == 'true' or os.environ.get('GITHUB_ACTIONS') == 'true'
HEADLESS = os.environ.get('HEADLESS', 'true' if CI else 'false').strip().lower() in ('1', 'true', 'yes')

MAX_ATTEMPTS = _env_int('MAX_ATTEMPTS', 5)
SOLVER_MAX_ROUNDS = _env_int('SOLVER_ROUNDS', SOLVER_ROUNDS)
POLL_INTERVAL = _env_float('POLL_INTERVAL', POLL_INTERVAL_SECONDS)
PRESS_HOLD = _env_float('PRESS_HOLD', PRESS_HOLD_SECONDS)
SETTLE_DELAY = _env_float('SETTLE_DELAY', 3.0)

# 页面文案 / 选择器
RENEW_MODAL_SELECTOR = '#renew-modal'
NOT_ELIGIBLE_TEXT = "You can't renew your server yet"
LOGIN_ERROR_TEXT = 'Incorrect password or no account'
MODAL_TIMEOUT_MS = 10000
CONFIRM_TIMEOUT_MS = 10000


class AccountSourceError(Exception):
    """账号来源无法读取或格式错误，整次运行终止"""


@dataclass(frozen=True)
class Account:
    username: str
    password: str


class Outcome(Enum):
    SUCCESS = 'success'
    NOT_YET_ELIGIBLE = 'not_yet_eligible'
    PENDING = 'pending'
    UNRESOLVED = 'unresolved'
    LOGIN_FAILED = 'login_failed'


TERMINAL_OUTCOMES = (Outcome.SUCCESS, Outcome.NOT_YET_ELIGIBLE)


@dataclass(frozen=True)
class PageSnapshot:
    """确认续期后页面的状态快照"""
    status_text: Optional[str]
    modal_visible: bool


@dataclass(frozen=True)
class RenewalResult:
    outcome: Outcome
    attempts: int
    detail: str = ''


@dataclass
class AccountReport:
    username: str
    result: Optional[RenewalResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def load_accounts(path: str = ACCOUNTS_FILE, raw: Optional[str] = None) -> List[Account]:
    """读取账号列表，格式: [{"username": "...", "password": "..."}]"""
    if raw is None:
        raw = os.environ.get('LOGIN_JSON')
    try:
        if raw is None:
            with open(path, 'r', encoding='utf-8') as f:
                raw = f.read()
        data = json.loads(raw)
    except (OSError, ValueError) as e:
        raise AccountSourceError(f"无法读取账号列表: {e}") from e

    if not isinstance(data, list):
        raise AccountSourceError("账号列表必须是 JSON 数组")

    accounts = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise AccountSourceError(f"第 {i + 1} 个账号不是对象")
        username = item.get('username')
        password = item.get('password')
        if not isinstance(username, str) or not username or not isinstance(password, str):
            raise AccountSourceError(f"第 {i + 1} 个账号缺少 username/password")
        accounts.append(Account(username, password))
    return accounts


def send_telegram_message(message: str) -> bool:
    """发送Telegram消息（仅文字，HTML 格式）"""
    bot_token = TELEGRAM_BOT_TOKEN
    chat_id = TELEGRAM_CHAT_ID

    if not bot_token or not chat_id:
        logger.warning("⚠️ 未设置 Telegram 配置，跳过消息推送")
        return False

    try:
        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        data = {
            'chat_id': chat_id,
            'text': message,
            'parse_mode': 'HTML'
        }
        response = requests.post(url, json=data, timeout=30)

        if response.status_code == 200:
            logger.info(f"✅ Telegram 消息发送成功: {re.sub(r'<[^>]*>', '', message)}")
            return True
        else:
            logger.warning(f"⚠️ Telegram 消息发送失败: {response.status_code}")
            return False

    except Exception as e:
        logger.error(f"❌ Telegram 消息发送出错: {str(e)}")
        return False


def format_login_failed(username: str) -> str:
    return f"❌ <b>登录失败</b>\n用户: {html.escape(username)}\n原因: 账号或密码错误"


def format_not_yet_eligible(username: str, date: str) -> str:
    return f"⏳ <b>无需续期</b>\n用户: {html.escape(username)}\n可续期时间: {html.escape(date)}"


def format_success(username: str, attempts: int) -> str:
    return f"✅ <b>续期成功</b>\n用户: {html.escape(username)}\n尝试次数: {attempts}"


def format_unresolved(username: str, attempts: int, detail: str = '') -> str:
    message = f"⚠️ <b>续期未完成</b>\n用户: {html.escape(username)}\n尝试次数: {attempts}"
    if detail:
        message += f"\n原因: {html.escape(detail)}"
    return message


def extract_eligibility_date(status_text: str) -> str:
    """从 "You can't renew your server yet..." 文案里取出可续期日期"""
    iso = re.search(r'\d{4}-\d{2}-\d{2}', status_text)
    if iso:
        return iso.group(0)
    as_of = re.search(r'as of\s+([^(.]+)', status_text, re.IGNORECASE)
    if as_of:
        return as_of.group(1).strip()
    return status_text.split('(')[0].strip()


def classify_outcome(snapshot: PageSnapshot, attempt: int) -> RenewalResult:
    """根据确认后的页面状态判断结果，不做任何等待或重试"""
    if snapshot.status_text:
        return RenewalResult(Outcome.NOT_YET_ELIGIBLE, attempt,
                             extract_eligibility_date(snapshot.status_text))
    if not snapshot.modal_visible:
        return RenewalResult(Outcome.SUCCESS, attempt)
    return RenewalResult(Outcome.PENDING, attempt)


async def is_visible_within(locator: Locator, timeout_ms: int) -> bool:
    """等待元素可见，超时返回 False"""
    try:
        await locator.wait_for(state='visible', timeout=timeout_ms)
    except PlaywrightTimeoutError:
        return False
    return await locator.is_visible()


async def capture_snapshot(page: Page, modal: Locator) -> PageSnapshot:
    status = page.get_by_text(NOT_ELIGIBLE_TEXT).first
    status_text = None
    if await status.is_visible():
        status_text = (await status.inner_text()).strip()
    return PageSnapshot(status_text=status_text, modal_visible=await modal.is_visible())


async def login(page: Page, account: Account) -> bool:
    """登录，返回 False 表示账号或密码错误"""
    await page.goto(LOGIN_URL)

    email_input = page.get_by_role('textbox', name='Email')
    if await is_visible_within(email_input, 5000):
        await email_input.fill(account.username)
        await page.locator('input[type="password"]').fill(account.password)
        await page.get_by_role('button', name='Login').click()
    else:
        logger.info("ℹ️ 未出现登录表单，可能已登录")

    if await is_visible_within(page.get_by_text(LOGIN_ERROR_TEXT).first, 4000):
        return False
    return True


async def open_server_page(page: Page) -> None:
    await page.goto(DASHBOARD_URL)
    await page.get_by_role('link', name='See').first.click()


async def renew_with_retries(page: Page, max_attempts: int = MAX_ATTEMPTS,
                             solver_rounds: int = SOLVER_MAX_ROUNDS,
                             poll_interval: float = POLL_INTERVAL,
                             press_hold: float = PRESS_HOLD,
                             settle_delay: float = SETTLE_DELAY) -> RenewalResult:
    """
    续期循环：点击 Renew → 等弹窗 → 点 Turnstile → 确认 → 判断结果
    未得到明确结果则刷新页面重试，最多 max_attempts 次
    """
    modal = page.locator(RENEW_MODAL_SELECTOR)

    for attempt in range(1, max_attempts + 1):
        logger.info(f"\n🔁 第 {attempt}/{max_attempts} 次尝试续期")

        renew_button = page.get_by_role('button', name='Renew').first
        if not await is_visible_within(renew_button, 5000):
            logger.warning("⚠️ 未找到 Renew 按钮")
            return RenewalResult(Outcome.UNRESOLVED, attempt - 1, '未找到 Renew 按钮')

        await renew_button.click()
        if not await is_visible_within(modal, MODAL_TIMEOUT_MS):
            logger.warning("⚠️ 续期弹窗未出现")
            return RenewalResult(Outcome.UNRESOLVED, attempt - 1, '续期弹窗未出现')

        solved = await solve_turnstile(page, rounds=solver_rounds,
                                       interval=poll_interval, hold=press_hold)
        if not solved:
            logger.warning("⚠️ 本次未点到 Turnstile，仍继续确认")

        await asyncio.sleep(settle_delay)
        try:
            await modal.get_by_role('button', name='Renew').click(timeout=CONFIRM_TIMEOUT_MS)
            logger.info("✅ 已点击弹窗确认按钮")
        except PlaywrightTimeoutError:
            logger.warning("⚠️ 弹窗确认按钮不可点击，直接判断结果")

        await asyncio.sleep(settle_delay)
        result = classify_outcome(await capture_snapshot(page, modal), attempt)
        if result.outcome in TERMINAL_OUTCOMES:
            return result

        logger.info("⏳ 结果未知，刷新页面后重试")
        await page.reload()

    logger.warning(f"⚠️ {max_attempts} 次尝试后仍未完成续期")
    return RenewalResult(Outcome.UNRESOLVED, max_attempts, f'{max_attempts} 次尝试均未确认')


def notify_result(username: str, result: RenewalResult) -> None:
    if result.outcome == Outcome.SUCCESS:
        send_telegram_message(format_success(username, result.attempts))
    elif result.outcome == Outcome.NOT_YET_ELIGIBLE:
        send_telegram_message(format_not_yet_eligible(username, result.detail))
    elif result.outcome == Outcome.LOGIN_FAILED:
        send_telegram_message(format_login_failed(username))
    else:
        send_telegram_message(format_unresolved(username, result.attempts, result.detail))


async def save_error_screenshot(page: Page, index: int) -> None:
    if not SCREENSHOT_DIR:
        return
    path = os.path.join(SCREENSHOT_DIR, f'katabump_error_{index}.png')
    try:
        await page.screenshot(path=path, full_page=True)
        logger.info(f"📸 错误截图: {path}")
    except Exception as e:
        logger.warning(f"⚠️ 截图失败: {e}")


async def process_account(context, account: Account, index: int = 1) -> AccountReport:
    """处理单个账号，所有异常都在这里截住"""
    logger.info(f"\n>>> 正在处理用户: {account.username}")
    report = AccountReport(account.username)
    page = None
    try:
        page = await context.new_page()
        await install_probe(page)

        logger.info("[1/3] 🔐 登录...")
        if not await login(page, account):
            logger.error(f"❌ 登录失败: {account.username}")
            report.result = RenewalResult(Outcome.LOGIN_FAILED, 0, '账号或密码错误')
            notify_result(account.username, report.result)
            return report

        logger.info("[2/3] 🌐 打开服务器页面...")
        await open_server_page(page)

        logger.info("[3/3] 🖱️ 续期...")
        report.result = await renew_with_retries(page)
        logger.info(f"📋 {account.username}: {report.result.outcome.value} (尝试 {report.result.attempts} 次)")
        notify_result(account.username, report.result)
    except Exception as e:
        logger.exception(f"❌ 处理用户 {account.username} 出错: {e}")
        report.error = str(e) or type(e).__name__
        if page is not None:
            await save_error_screenshot(page, index)
    finally:
        if page is not None:
            try:
                await page.close()
            except Exception as e:
                logger.warning(f"⚠️ 关闭页面失败: {e}")
    return report


async def run_accounts(context, accounts: List[Account]) -> List[AccountReport]:
    """按顺序处理所有账号，每个账号之间清空 cookies"""
    reports = []
    for index, account in enumerate(accounts, 1):
        reports.append(await process_account(context, account, index))
        try:
            await context.clear_cookies()
        except Exception as e:
            logger.warning(f"⚠️ 清理 cookies 失败: {e}")
    return reports


@asynccontextmanager
async def launch_browser(engine: str = BROWSER_ENGINE, headless: bool = HEADLESS):
    """启动浏览器：chromium（默认，可用 CDP）或 camoufox"""
    if engine == 'camoufox':
        async with AsyncCamoufox(
            headless=headless,
            os=["windows"],
            screen=Screen(max_width=1920, max_height=1080),
        ) as browser:
            yield browser
        return

    if engine != 'chromium':
        raise ValueError(f"不支持的 BROWSER_ENGINE: {engine}")

    async with Stealth().use_async(async_playwright()) as p:
        browser = await p.chromium.launch(
            headless=headless,
            args=['--no-sandbox', '--disable-setuid-sandbox'],
        )
        try:
            yield browser
        finally:
            await browser.close()


def log_summary(reports: List[AccountReport]) -> None:
    logger.info("\n" + "=" * 70)
    logger.info("📊 运行结果")
    for report in reports:
        if not report.ok:
            logger.info(f"  ❌ {report.username}: 出错 - {report.error}")
        elif report.result is not None:
            logger.info(f"  • {report.username}: {report.result.outcome.value} {report.result.detail}".rstrip())
    logger.info("=" * 70)


async def main() -> int:
    """主函数"""
    try:
        accounts = load_accounts()
    except AccountSourceError as e:
        logger.error(f"❌ {e}")
        return 2

    print("=" * 70)
    print("  🔐 Katabump 自动续期脚本")
    print(f"  👥 账号数量: {len(accounts)}")
    print(f"  🤖 浏览器: {BROWSER_ENGINE} (headless={HEADLESS})")
    print(f"  🕐 时间: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70)

    async with launch_browser() as browser:
        context = await browser.new_context()
        try:
            reports = await run_accounts(context, accounts)
        finally:
            await context.close()

    log_summary(reports)
    return 0 if all(report.ok for report in reports) else 1


def cli() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
