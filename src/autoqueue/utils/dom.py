"""
Page-side DOM primitives.

AGENT_BOOTSTRAP_JS is injected into the target page and installs
window.__autoqueue: a small set of synchronous probes plus the
native-setter typing routine. DOMDriver is the Python face of those
primitives; the submission state machine (PageAgent) only ever touches
the DOM through it.

The probes return raw facts (texts, flags). Keyword matching and every
decision stays in Python so it can follow the selector config.
"""

import re
import logging
from typing import Any, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError
from pydantic import BaseModel

from ..config import SelectorConfig
from ..core.exceptions import BrowserError
from ..core.models import DetectedSettings, SubmitControl

logger = logging.getLogger(__name__)

BOOTSTRAP_VERSION = "1"

AGENT_BOOTSTRAP_JS = """
(() => {
    const VERSION = "%(version)s";
    if (window.__autoqueue && window.__autoqueue.version === VERSION) {
        return true;
    }

    const INPUT_MARK = "data-autoqueue-input";
    const SUBMIT_MARK = "data-autoqueue-submit";

    const sleep = (ms) => new Promise((resolve) => setTimeout(resolve, ms));
    const isVisible = (el) => !!el && el.offsetParent !== null;
    const lower = (s) => (s || "").toLowerCase();
    const marked = (attr) => document.querySelector(`[${attr}]`);
    const mark = (el, attr) => {
        document.querySelectorAll(`[${attr}]`).forEach((e) => e.removeAttribute(attr));
        if (el) {
            el.setAttribute(attr, "1");
        }
    };

    window.__autoqueue = {
        version: VERSION,

        ping: () => ({ ready: true, version: VERSION, url: window.location.href }),

        // First visible match wins; the element is marked for later calls
        findInput: (selectors) => {
            for (const selector of selectors) {
                const el = document.querySelector(selector);
                if (isVisible(el)) {
                    mark(el, INPUT_MARK);
                    return selector;
                }
            }
            mark(null, INPUT_MARK);
            return null;
        },

        // Native setter bypasses the framework's controlled-input wrapper
        setInputValue: async (text) => {
            const el = marked(INPUT_MARK);
            if (!el) {
                return null;
            }
            el.focus();
            await sleep(100);

            const proto = el instanceof HTMLTextAreaElement
                ? window.HTMLTextAreaElement.prototype
                : window.HTMLInputElement.prototype;
            const descriptor = Object.getOwnPropertyDescriptor(proto, "value");
            if (descriptor && descriptor.set) {
                descriptor.set.call(el, text);
            } else {
                el.value = text;
            }

            el.dispatchEvent(new InputEvent("input", { bubbles: true, cancelable: true, composed: true }));
            await sleep(100);
            el.dispatchEvent(new Event("change", { bubbles: true, cancelable: true }));
            el.dispatchEvent(new KeyboardEvent("keydown", { bubbles: true, cancelable: true }));
            el.dispatchEvent(new KeyboardEvent("keyup", { bubbles: true, cancelable: true }));
            el.focus();
            await sleep(200);
            return el.value;
        },

        findSubmit: (cfg) => {
            let found = null;
            for (const el of Array.from(document.querySelectorAll(cfg.candidates))) {
                const text = lower(el.textContent);
                const aria = lower(el.getAttribute("aria-label"));
                if (cfg.textKeywords.some((k) => text.includes(k)) ||
                    cfg.ariaKeywords.some((k) => aria.includes(k))) {
                    found = el;
                    break;
                }
            }
            mark(found, SUBMIT_MARK);
            if (!found) {
                return { found: false, disabled: false, text: "", aria_label: "" };
            }
            return {
                found: true,
                disabled: !!found.disabled || found.getAttribute("aria-disabled") === "true",
                text: (found.textContent || "").trim().substring(0, 100),
                aria_label: found.getAttribute("aria-label") || "",
            };
        },

        clickSubmit: () => {
            const el = marked(SUBMIT_MARK);
            if (!el) {
                return false;
            }
            el.click();
            return true;
        },

        pressEnter: () => {
            const el = marked(INPUT_MARK);
            if (!el) {
                return false;
            }
            el.dispatchEvent(new KeyboardEvent("keydown", {
                key: "Enter", code: "Enter", keyCode: 13, which: 13, bubbles: true, cancelable: true,
            }));
            return true;
        },

        submitForm: () => {
            const el = marked(INPUT_MARK);
            const form = el ? el.closest("form") : null;
            if (!form) {
                return false;
            }
            form.dispatchEvent(new Event("submit", { bubbles: true, cancelable: true }));
            return true;
        },

        probeLoaders: (cfg) => {
            let withMarker = false;
            let visible = false;
            for (const selector of cfg.selectors) {
                const el = document.querySelector(selector);
                if (!el) {
                    continue;
                }
                const parent = el.parentElement;
                if (parent && (parent.textContent || "").includes(cfg.marker)) {
                    withMarker = true;
                }
                if (el instanceof HTMLElement && isVisible(el)) {
                    visible = true;
                }
            }
            return {
                with_marker: withMarker,
                visible: visible,
                generic_present: !!document.querySelector(cfg.generic),
            };
        },

        statusText: (selector) => {
            const el = document.querySelector(selector);
            return el ? lower(el.textContent).trim() : "";
        },

        textsOf: (selectors) => {
            const texts = [];
            for (const selector of selectors) {
                for (const el of Array.from(document.querySelectorAll(selector))) {
                    const text = (el.textContent || "").trim();
                    if (text) {
                        texts.push(text.substring(0, 300));
                    }
                }
            }
            return texts;
        },

        comboboxTexts: (selector) => Array.from(document.querySelectorAll(selector)).map((button) => {
            const span = button.querySelector("span");
            return ((span && span.textContent) || button.textContent || "").trim();
        }),

        domSnapshot: () => ({
            url: window.location.href,
            title: document.title,
            ready_state: document.readyState,
            inputs: Array.from(document.querySelectorAll("textarea, input[type=text]")).map((el, i) => ({
                index: i,
                tag: el.tagName.toLowerCase(),
                placeholder: el.getAttribute("placeholder") || "",
                value: (el.value || "").substring(0, 50),
                visible: isVisible(el),
                disabled: !!el.disabled,
            })),
            buttons: Array.from(document.querySelectorAll("button")).slice(0, 10).map((btn, i) => ({
                index: i,
                text: (btn.textContent || "").trim().substring(0, 100),
                aria_label: btn.getAttribute("aria-label"),
                disabled: !!btn.disabled,
            })),
        }),
    };
    return true;
})()
""" % {"version": BOOTSTRAP_VERSION}

ASPECT_RATIOS = ("1:1", "16:9", "9:16", "4:3", "3:4", "21:9")

_VARIATION_PATTERN = re.compile(r'(\d+)v?')


class LoaderProbe(BaseModel):
    """Raw loading-indicator facts read from the page."""

    with_marker: bool = False
    visible: bool = False
    generic_present: bool = False


def parse_detected_settings(texts: List[str]) -> DetectedSettings:
    """
    Read media kind, aspect ratio and variation count from combobox labels.

    The first label that matches each setting wins.
    """
    media_kind = None
    aspect_ratio = None
    variations = None

    for text in texts:
        label = text.lower()

        if media_kind is None:
            if "image" in label or "img" in label:
                media_kind = "image"
            elif "video" in label or "vid" in label:
                media_kind = "video"

        if aspect_ratio is None:
            for ratio in ASPECT_RATIOS:
                if ratio in label:
                    aspect_ratio = ratio
                    break

        # "4:3" must not be read as 4 variations
        if variations is None and ":" not in label:
            match = _VARIATION_PATTERN.search(label)
            if match and int(match.group(1)) in (2, 4):
                variations = int(match.group(1))

    return DetectedSettings(
        media_kind=media_kind,
        aspect_ratio=aspect_ratio,
        variations=variations,
    )


class DOMDriver:
    """
    Async wrapper over window.__autoqueue for one Playwright page.

    Every method is a single page.evaluate round trip. Playwright errors
    (page navigated away, context destroyed) propagate to the caller.
    """

    def __init__(self, page, selectors: SelectorConfig):
        """
        Args:
            page: Playwright Page the agent lives in
            selectors: Matcher lists passed to the probes
        """
        self.page = page
        self.selectors = selectors

    async def inject(self) -> None:
        """
        Install window.__autoqueue in the current document.

        Raises:
            BrowserError: If the page is gone or cannot evaluate scripts
        """
        try:
            await self.page.evaluate(AGENT_BOOTSTRAP_JS)
        except PlaywrightError as e:
            raise BrowserError(f"Failed to inject agent: {e}") from e

    async def is_injected(self) -> bool:
        """False also when the page is mid-navigation and cannot evaluate."""
        try:
            return bool(await self.page.evaluate(
                "(version) => !!window.__autoqueue && window.__autoqueue.version === version",
                BOOTSTRAP_VERSION
            ))
        except PlaywrightError as e:
            logger.debug(f"Agent probe failed: {e}")
            return False

    async def find_input(self) -> Optional[str]:
        """Selector of the first visible prompt field, or None."""
        return await self.page.evaluate(
            "(selectors) => window.__autoqueue.findInput(selectors)",
            self.selectors.input_selectors
        )

    async def set_input_value(self, text: str) -> Optional[str]:
        """Type into the located field; returns the value read back."""
        return await self.page.evaluate(
            "(text) => window.__autoqueue.setInputValue(text)",
            text
        )

    async def find_submit(self) -> SubmitControl:
        raw = await self.page.evaluate(
            "(cfg) => window.__autoqueue.findSubmit(cfg)",
            {
                "candidates": self.selectors.submit_candidates,
                "textKeywords": self.selectors.submit_text_keywords,
                "ariaKeywords": self.selectors.submit_aria_keywords,
            }
        )
        return SubmitControl(**raw)

    async def click_submit(self) -> bool:
        return bool(await self.page.evaluate("() => window.__autoqueue.clickSubmit()"))

    async def press_enter(self) -> bool:
        return bool(await self.page.evaluate("() => window.__autoqueue.pressEnter()"))

    async def submit_form(self) -> bool:
        return bool(await self.page.evaluate("() => window.__autoqueue.submitForm()"))

    async def probe_loaders(self) -> LoaderProbe:
        raw = await self.page.evaluate(
            "(cfg) => window.__autoqueue.probeLoaders(cfg)",
            {
                "selectors": self.selectors.loading_selectors,
                "marker": self.selectors.loading_text_marker,
                "generic": self.selectors.generic_loader_selector,
            }
        )
        return LoaderProbe(**raw)

    async def status_text(self) -> str:
        """Lower-cased text of the status element, empty if absent."""
        return await self.page.evaluate(
            "(selector) => window.__autoqueue.statusText(selector)",
            self.selectors.status_selector
        ) or ""

    async def limit_texts(self) -> List[str]:
        """Texts of every element that could hold a rate-limit banner."""
        return await self.page.evaluate(
            "(selectors) => window.__autoqueue.textsOf(selectors)",
            self.selectors.limit_selectors
        ) or []

    async def combobox_texts(self) -> List[str]:
        return await self.page.evaluate(
            "(selector) => window.__autoqueue.comboboxTexts(selector)",
            self.selectors.settings_combobox_selector
        ) or []

    async def dom_snapshot(self) -> Dict[str, Any]:
        return await self.page.evaluate("() => window.__autoqueue.domSnapshot()")
