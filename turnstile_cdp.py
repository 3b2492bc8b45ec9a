"""
Cloudflare Turnstile 复选框点击 - 注入探针 + CDP 版本
- 探针脚本在每个 frame 创建时注入，劫持 attachShadow 观察 closed shadow root 里的复选框
- 复选框出现后把中心点（相对 frame 视口的比例）写到 window.__turnstile_data
- 主机侧逐个 frame 读取比例，换算成页面坐标，通过 CDP 发送真实的按下/抬起事件
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from playwright.async_api import Page, Frame, Error as PlaywrightError

logger = logging.getLogger(__name__)

PROBE_KEY = "__turnstile_data"

# 按下到抬起的间隔、轮询间隔、轮询次数
PRESS_HOLD_SECONDS = 0.1
POLL_INTERVAL_SECONDS = 1.0
SOLVER_ROUNDS = 10

PROBE_SCRIPT = """
(() => {
    if (window.self === window.top) return;
    const KEY = '__turnstile_data';
    const nativeAttachShadow = Element.prototype.attachShadow;
    Element.prototype.attachShadow = function (init) {
        const root = nativeAttachShadow.call(this, init);
        if (!root) return root;
        const publish = () => {
            if (window[KEY]) return true;
            const checkbox = root.querySelector('input[type="checkbox"]');
            if (!checkbox) return false;
            const rect = checkbox.getBoundingClientRect();
            if (rect.width <= 0) return false;
            window[KEY] = Object.freeze({
                xRatio: (rect.left + rect.width / 2) / window.innerWidth,
                yRatio: (rect.top + rect.height / 2) / window.innerHeight,
            });
            return true;
        };
        const observer = new MutationObserver(() => {
            if (publish()) observer.disconnect();
        });
        observer.observe(root, { childList: true, subtree: true, attributes: true });
        return root;
    };
})();
"""


@dataclass(frozen=True)
class WidgetPosition:
    """复选框中心点，相对所在 frame 视口的比例 (0~1)"""
    x_ratio: float
    y_ratio: float

    @classmethod
    def from_payload(cls, payload) -> Optional["WidgetPosition"]:
        if not isinstance(payload, dict):
            return None
        try:
            x_ratio = float(payload["xRatio"])
            y_ratio = float(payload["yRatio"])
        except (KeyError, TypeError, ValueError):
            return None
        # 视口尺寸取整时比例可能略微越界
        return cls(min(max(x_ratio, 0.0), 1.0), min(max(y_ratio, 0.0), 1.0))


@dataclass(frozen=True)
class FrameGeometry:
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_box(cls, box) -> Optional["FrameGeometry"]:
        if not box or box.get("width", 0) <= 0 or box.get("height", 0) <= 0:
            return None
        return cls(box["x"], box["y"], box["width"], box["height"])


def absolute_point(geometry: FrameGeometry, position: WidgetPosition) -> Tuple[float, float]:
    """把 frame 内的比例坐标换算成页面坐标"""
    return (
        geometry.x + geometry.width * position.x_ratio,
        geometry.y + geometry.height * position.y_ratio,
    )


async def install_probe(target) -> None:
    """在 Page 或 BrowserContext 上注册探针脚本，之后创建的每个 frame 都会执行"""
    await target.add_init_script(PROBE_SCRIPT)


async def read_widget_position(frame: Frame) -> Optional[WidgetPosition]:
    try:
        payload = await frame.evaluate(f"() => window.{PROBE_KEY} || null")
    except PlaywrightError as e:
        # frame 已分离或正在导航
        logger.debug(f"读取 frame 探针数据失败: {e}")
        return None
    return WidgetPosition.from_payload(payload)


async def collect_widget_positions(page: Page) -> Dict[Frame, WidgetPosition]:
    """按 frame 收集当前已发布的位置，只读快照"""
    positions = {}
    for frame in page.frames:
        position = await read_widget_position(frame)
        if position is not None:
            positions[frame] = position
    return positions


async def frame_geometry(frame: Frame) -> Optional[FrameGeometry]:
    try:
        element = await frame.frame_element()
        box = await element.bounding_box()
    except PlaywrightError as e:
        logger.debug(f"获取 frame 位置失败: {e}")
        return None
    return FrameGeometry.from_box(box)


def supports_cdp(page: Page) -> bool:
    browser = page.context.browser
    return browser is not None and browser.browser_type.name == "chromium"


async def dispatch_press_release(page: Page, x: float, y: float,
                                 hold: float = PRESS_HOLD_SECONDS) -> None:
    """在 (x, y) 发送一次按下 + 抬起，走浏览器底层输入通道而不是 DOM 事件"""
    if not supports_cdp(page):
        # Camoufox (Firefox) 没有 CDP，Playwright 的 mouse 同样走原生输入管线
        await page.mouse.move(x, y)
        await page.mouse.down()
        await asyncio.sleep(hold)
        await page.mouse.up()
        return

    client = await page.context.new_cdp_session(page)
    try:
        event = {"x": x, "y": y, "button": "left", "clickCount": 1}
        await client.send("Input.dispatchMouseEvent", {"type": "mousePressed", **event})
        await asyncio.sleep(hold)
        await client.send("Input.dispatchMouseEvent", {"type": "mouseReleased", **event})
    finally:
        await client.detach()


async def attempt_turnstile_cdp(page: Page, hold: float = PRESS_HOLD_SECONDS) -> bool:
    """单轮尝试：找到第一个已发布位置且能定位的 frame 并点击"""
    positions = await collect_widget_positions(page)
    for frame, position in positions.items():
        geometry = await frame_geometry(frame)
        if geometry is None:
            continue
        x, y = absolute_point(geometry, position)
        await dispatch_press_release(page, x, y, hold=hold)
        logger.info(f"✅ 已点击 Turnstile 复选框 ({x:.0f}, {y:.0f})")
        return True
    return False


async def solve_turnstile(page: Page, rounds: int = SOLVER_ROUNDS,
                          interval: float = POLL_INTERVAL_SECONDS,
                          hold: float = PRESS_HOLD_SECONDS) -> bool:
    """轮询直到点击成功或轮数用完；失败不抛异常，由外层决定是否重试"""
    logger.info("🔍 等待 Turnstile 复选框...")
    for i in range(rounds):
        if await attempt_turnstile_cdp(page, hold=hold):
            return True
        if i % 5 == 0:
            logger.debug(f"第 {i + 1}/{rounds} 轮: 复选框尚未出现")
        await asyncio.sleep(interval)

    logger.warning(f"⚠️ {rounds} 轮内未能点击 Turnstile")
    return False
