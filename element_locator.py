"""
element_locator.py - 页面元素定位

职责：
- 按优先级选择器列表定位输入框、发送按钮、停止按钮和最新回答文本
- 定位只读取页面状态，不产生副作用
- DrissionElementLocator：实时页面（DrissionPage 标签页）
- SnapshotLocator：静态 HTML 快照（BeautifulSoup），用于选择器调试
"""

from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

from browser_core import SecureLogger
from config_engine import DEFAULT_SELECTORS
from data_models import SiteSelectors


logger = SecureLogger('locator')


class ElementLocator:
    """元素定位器接口"""

    def find_input(self) -> Optional[Any]:
        raise NotImplementedError

    def find_send_control(self) -> Optional[Any]:
        raise NotImplementedError

    def find_stop_control(self) -> Optional[Any]:
        raise NotImplementedError

    def find_latest_answer_text(self) -> str:
        raise NotImplementedError

    def count_answers(self) -> int:
        """当前回答节点数量，用于区分新一轮回答"""
        raise NotImplementedError


def _normalize_selector(selector: str) -> str:
    """无前缀的选择器按 CSS 处理"""
    if selector.startswith(('tag:', '@', 'xpath:', 'css:')) or '@@' in selector:
        return selector
    return f'css:{selector}'


# ================= 实时页面 =================

class DrissionElementLocator(ElementLocator):
    """DrissionPage 标签页上的元素定位器"""

    def __init__(self, tab, selectors: SiteSelectors = None, timeout: float = 0.1):
        self.tab = tab
        self.selectors = selectors or SiteSelectors(**DEFAULT_SELECTORS)
        self.timeout = timeout

    def _find(self, selector: str, scope=None) -> Optional[Any]:
        scope = scope if scope is not None else self.tab
        try:
            ele = scope.ele(_normalize_selector(selector), timeout=self.timeout)
        except Exception as e:
            logger.debug(f"元素查找失败 [{selector}]: {e}")
            return None
        # 未找到时 DrissionPage 返回假值的 NoneElement
        return ele if ele else None

    def _find_first(self, selectors: List[str], scope=None,
                    visible_only: bool = False) -> Optional[Any]:
        for selector in selectors:
            ele = self._find(selector, scope)
            if ele is None:
                continue
            if visible_only and not self._is_displayed(ele):
                continue
            return ele
        return None

    @staticmethod
    def _is_displayed(ele) -> bool:
        try:
            return bool(ele.states.is_displayed)
        except Exception:
            return False

    def find_input(self) -> Optional[Any]:
        return self._find_first(self.selectors.input_box)

    def find_send_control(self) -> Optional[Any]:
        # 优先在输入框所在的表单内查找
        input_box = self.find_input()
        if input_box is not None:
            try:
                form = input_box.parent('tag:form')
            except Exception:
                form = None
            if form:
                button = self._find_first(self.selectors.send_btn, scope=form)
                if button is not None:
                    return button

        return self._find_first(self.selectors.send_btn)

    def find_stop_control(self) -> Optional[Any]:
        return self._find_first(self.selectors.stop_btn, visible_only=True)

    def _answer_nodes(self) -> list:
        for selector in self.selectors.answer:
            try:
                eles = self.tab.eles(_normalize_selector(selector), timeout=self.timeout)
            except Exception as e:
                logger.debug(f"回答节点查找失败 [{selector}]: {e}")
                continue
            if eles:
                return list(eles)
        return []

    def find_latest_answer_text(self) -> str:
        nodes = self._answer_nodes()
        return (nodes[-1].text or "").strip() if nodes else ""

    def count_answers(self) -> int:
        return len(self._answer_nodes())


# ================= HTML 快照 =================

class SnapshotLocator(ElementLocator):
    """静态 HTML 上的元素定位器（只支持 css: / tag: 语法）"""

    def __init__(self, html: str, selectors: SiteSelectors = None):
        self.soup = BeautifulSoup(html or "", 'html.parser')
        self.selectors = selectors or SiteSelectors(**DEFAULT_SELECTORS)

    @staticmethod
    def to_css(selector: str) -> Optional[str]:
        """把 DrissionPage 语法转换为 CSS；xpath 等不支持的语法返回 None"""
        selector = selector.strip()

        if selector.startswith('css:'):
            return selector[4:]

        if selector.startswith('tag:'):
            body = selector[4:]
            tag, _, attrs = body.partition('@@')
            css = tag
            for attr in filter(None, attrs.split('@@')):
                name, _, value = attr.partition('=')
                css += f'[{name}="{value}"]' if value else f'[{name}]'
            return css

        if selector.startswith(('xpath:', '@')) or '@@' in selector:
            return None

        return selector

    def _select(self, selector: str) -> list:
        css = self.to_css(selector)
        if not css:
            logger.debug(f"快照不支持的选择器: {selector}")
            return []
        try:
            return self.soup.select(css)
        except Exception as e:
            # soupsieve 对非法 CSS 抛出 SelectorSyntaxError
            logger.debug(f"选择器语法错误 [{selector}]: {e}")
            return []

    def _first(self, selectors: List[str], scope=None) -> Optional[Any]:
        for selector in selectors:
            if scope is not None:
                css = self.to_css(selector)
                matches = scope.select(css) if css else []
            else:
                matches = self._select(selector)
            if matches:
                return matches[0]
        return None

    def find_input(self) -> Optional[Any]:
        return self._first(self.selectors.input_box)

    def find_send_control(self) -> Optional[Any]:
        input_box = self.find_input()
        if input_box is not None:
            form = input_box.find_parent('form')
            if form is not None:
                button = self._first(self.selectors.send_btn, scope=form)
                if button is not None:
                    return button
        return self._first(self.selectors.send_btn)

    def find_stop_control(self) -> Optional[Any]:
        return self._first(self.selectors.stop_btn)

    def _answer_nodes(self) -> list:
        for selector in self.selectors.answer:
            matches = self._select(selector)
            if matches:
                return matches
        return []

    def find_latest_answer_text(self) -> str:
        nodes = self._answer_nodes()
        # 每个文本块一行，不依赖解析器保留的空白
        return nodes[-1].get_text(separator="\n", strip=True) if nodes else ""

    def count_answers(self) -> int:
        return len(self._answer_nodes())

    def probe(self) -> Dict[str, Any]:
        """逐个选择器报告匹配数量"""
        report: Dict[str, Any] = {}
        for key, selectors in self.selectors.model_dump().items():
            report[key] = [
                {"selector": selector, "count": len(self._select(selector))}
                for selector in selectors
            ]

        report["summary"] = {
            "input_box": self.find_input() is not None,
            "send_btn": self.find_send_control() is not None,
            "stop_btn": self.find_stop_control() is not None,
            "answer_text": self.find_latest_answer_text(),
        }
        return report
