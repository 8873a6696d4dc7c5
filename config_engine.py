"""
config_engine.py - 配置引擎

职责：
- 站点选择器配置加载/保存（sites.json）
- 选择器验证与修复
- 配置文件热更新
"""

import copy
import json
import logging
import os
import re
from typing import Dict, List, Optional
from urllib.parse import urlparse

from data_models import SiteSelectors


# ================= 常量配置 =================

class ConfigConstants:
    """配置引擎常量"""
    CONFIG_FILE = os.getenv("SITES_CONFIG_FILE", "sites.json")
    DEFAULT_DOMAIN = os.getenv("WEB_MODEL_DOMAIN", "chatgpt.com")


# 默认选择器（按优先级排列，DrissionPage 语法）
DEFAULT_SELECTORS: Dict[str, List[str]] = {
    "input_box": [
        'css:textarea[data-id="chat-input"]',
        'css:textarea[placeholder*="Message"]',
        'css:#prompt-textarea',
        'tag:textarea',
    ],
    "send_btn": [
        'css:button[data-testid="send-button"]',
        'css:button[type="submit"]',
        'css:button[aria-label*="Send"]',
    ],
    "stop_btn": [
        'css:button[data-testid="stop-button"]',
        'css:button[aria-label*="Stop"]',
    ],
    "answer": [
        'css:[data-message-author-role="assistant"]',
    ],
}

SELECTOR_KEYS = tuple(DEFAULT_SELECTORS.keys())

# 无效选择器语法模式
INVALID_SYNTAX_PATTERNS = [
    (r'~\s*\.\.', '~ .. 无效语法'),
    (r'\.\.\s*$', '结尾 .. 无效'),
    (r'>>\s', '>> 无效语法'),
    (r':has\(', ':has() 兼容性差'),
    (r'\s~\s*$', '结尾 ~ 无效'),
]


# ================= 日志配置 =================

logger = logging.getLogger('config_engine')
if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter('[%(asctime)s] %(levelname)s [Config] %(message)s', datefmt='%H:%M:%S')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def domain_of(url: str) -> str:
    """从 URL 提取域名（去掉 www.）"""
    netloc = urlparse(url).netloc or url.split("//")[-1].split("/")[0]
    netloc = netloc.split(":")[0].lower()
    return netloc[4:] if netloc.startswith("www.") else netloc


# ================= 选择器验证器 =================

class SelectorValidator:
    """选择器验证器"""

    def validate(self, selectors: Dict[str, List[str]]) -> Dict[str, List[str]]:
        """验证并修复选择器，未知键丢弃，空列表回退为默认值"""
        fixed: Dict[str, List[str]] = {}

        for key in SELECTOR_KEYS:
            raw = selectors.get(key)
            if isinstance(raw, str):
                raw = [raw]

            kept = []
            for selector in raw or []:
                if not isinstance(selector, str) or not selector.strip():
                    continue
                checked = self._check(key, selector.strip())
                if checked and checked not in kept:
                    kept.append(checked)

            if not kept:
                logger.info(f"[{key}] 无可用选择器，回退为默认值")
                kept = list(DEFAULT_SELECTORS[key])

            fixed[key] = kept

        unknown = set(selectors) - set(SELECTOR_KEYS)
        if unknown:
            logger.warning(f"忽略未知选择器键: {sorted(unknown)}")

        return fixed

    def _check(self, key: str, selector: str) -> Optional[str]:
        for pattern, reason in INVALID_SYNTAX_PATTERNS:
            if re.search(pattern, selector):
                logger.warning(f"❌ 无效选择器 [{key}]: {selector} ({reason})")
                repaired = self._try_repair(selector)
                if repaired:
                    logger.info(f"   ✅ 修复为: {repaired}")
                return repaired

        if re.search(r'\._[a-f0-9]{5,}|^\.[a-f0-9]{6,}', selector):
            logger.info(f"ℹ️  哈希类名 [{key}]: {selector} (可能不稳定，但保留)")

        return selector

    def _try_repair(self, selector: str) -> Optional[str]:
        """尝试修复选择器：保留标签名和一个稳定属性"""
        body = selector
        prefix = ""
        for syntax in ('css:', 'tag:'):
            if body.startswith(syntax):
                prefix, body = syntax, body[len(syntax):]
                break

        tag_match = re.match(r'^(\w+)', body)
        if not tag_match:
            return None

        tag = tag_match.group(1)

        attr_patterns = [
            r'(\[name=["\']?\w+["\']?\])',
            r'(\[type=["\']?\w+["\']?\])',
            r'(\[role=["\']?\w+["\']?\])',
            r'(\[data-testid=["\']?[\w-]+["\']?\])',
            r'(#[\w-]+)',
        ]

        for pattern in attr_patterns:
            match = re.search(pattern, body)
            if match:
                return f"{prefix or 'css:'}{tag}{match.group(1)}"

        return f"{prefix or 'css:'}{tag}"


# ================= 配置引擎 =================

class ConfigEngine:
    """站点选择器配置"""

    def __init__(self, config_file: str = None):
        self.config_file = config_file or ConfigConstants.CONFIG_FILE
        self.last_mtime = 0.0
        self.validator = SelectorValidator()
        self.sites: Dict[str, Dict[str, List[str]]] = self._load_config()

        logger.info(f"配置引擎已初始化，已加载 {len(self.sites)} 个站点配置")

    def _read_file(self) -> Dict:
        with open(self.config_file, "r", encoding="utf-8") as f:
            content = f.read().strip()
        if not content:
            return {}
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError("配置文件顶层必须是对象")
        return data

    def _load_config(self) -> Dict[str, Dict[str, List[str]]]:
        if not os.path.exists(self.config_file):
            logger.info(f"配置文件 {self.config_file} 不存在，使用默认选择器")
            return {}

        try:
            self.last_mtime = os.path.getmtime(self.config_file)
            data = self._read_file()
            logger.info(f"已加载配置文件: {self.config_file}")
            return data
        except (json.JSONDecodeError, ValueError) as e:
            logger.error(f"配置文件格式错误: {e}")
            return {}
        except OSError as e:
            logger.error(f"加载配置失败: {e}")
            return {}

    def refresh_if_changed(self):
        """文件修改时间变化时重载"""
        if not os.path.exists(self.config_file):
            return

        try:
            current_mtime = os.path.getmtime(self.config_file)
        except OSError as e:
            logger.error(f"检查文件变化失败: {e}")
            return

        if current_mtime != self.last_mtime:
            logger.info(f"⚡ 检测到配置文件变化 (new mtime: {current_mtime})")
            self.reload_config()

    def reload_config(self):
        """重新加载配置，解析失败时保留旧配置"""
        if not os.path.exists(self.config_file):
            logger.warning("重载失败：配置文件不存在")
            return

        try:
            mtime = os.path.getmtime(self.config_file)
            data = self._read_file()
        except (json.JSONDecodeError, ValueError) as e:
            logger.error(f"❌ 重载配置失败（JSON格式错误），保留旧配置: {e}")
            return
        except OSError as e:
            logger.error(f"❌ 重载配置失败: {e}")
            return

        self.sites = data
        self.last_mtime = mtime
        logger.info(f"✅ 配置已热重载 (Sites: {len(self.sites)})")

    def _save_config(self):
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(self.sites, f, indent=2, ensure_ascii=False)

        # 防止自己写入触发 refresh_if_changed 的重载
        self.last_mtime = os.path.getmtime(self.config_file)
        logger.info(f"配置已保存: {self.config_file}")

    def get_site_selectors(self, domain: str = None) -> SiteSelectors:
        """获取站点选择器（未配置的键使用默认值）"""
        self.refresh_if_changed()

        domain = domain or ConfigConstants.DEFAULT_DOMAIN
        stored = self.sites.get(domain)

        if stored is None:
            logger.debug(f"站点 {domain} 无配置，使用默认选择器")
            return SiteSelectors(**copy.deepcopy(DEFAULT_SELECTORS))

        return SiteSelectors(**self.validator.validate(stored))

    def set_site_selectors(self, domain: str, selectors: Dict[str, List[str]]) -> SiteSelectors:
        """验证并保存站点选择器"""
        self.refresh_if_changed()

        validated = self.validator.validate(selectors)
        self.sites[domain] = validated
        self._save_config()

        logger.info(f"站点选择器已更新: {domain}")
        return SiteSelectors(**validated)

    def delete_site_config(self, domain: str) -> bool:
        self.refresh_if_changed()

        if domain in self.sites:
            del self.sites[domain]
            self._save_config()
            logger.info(f"已删除配置: {domain}")
            return True
        return False


_config_engine: Optional[ConfigEngine] = None


def get_config_engine() -> ConfigEngine:
    """获取进程内共享的配置引擎（延迟创建）"""
    global _config_engine
    if _config_engine is None:
        _config_engine = ConfigEngine()
    return _config_engine
