import os
import json
import threading
import time
from pathlib import Path
from typing import Any, Dict, Tuple

from dotenv import dotenv_values

TRUTHY = {"1", "true", "yes", "on"}


class Config:
    """
    流水线配置，读取优先级: 项目根 .env > os.environ > 调用方默认值
    根目录下的 *.json (如 marketplace.json 覆盖模拟挂单) 合并后通过 get_json 读取
    """

    def __init__(self, root: Path, watch_interval: float = 5.0):
        self.root = Path(root)
        self.env_file = self.root / ".env"
        self.watch_interval = watch_interval
        self._lock = threading.Lock()
        self._env: Dict[str, str] = {}
        self._json: Dict[str, Any] = {}
        self._mtimes: Dict[str, float] = {}
        self.reload()
        if os.getenv("CONFIG_HOT_RELOAD", "0").lower() in TRUTHY:
            threading.Thread(target=self._watch, name="config-watcher", daemon=True).start()

    def _read_env(self) -> Dict[str, str]:
        if not self.env_file.exists():
            return {}
        # dotenv_values 负责引号与注释；只有 KEY 没有 = 的行值为 None，视为未配置
        return {k: v for k, v in dotenv_values(self.env_file).items() if v is not None}

    def _read_json(self) -> Tuple[Dict[str, Any], Dict[str, float]]:
        merged: Dict[str, Any] = {}
        mtimes: Dict[str, float] = {}
        for path in sorted(self.root.glob("*.json")):
            try:
                content = json.loads(path.read_text(encoding="utf-8"))
                mtimes[str(path)] = path.stat().st_mtime
            except (OSError, ValueError):
                continue
            if isinstance(content, dict):
                merged.update(content)
        return merged, mtimes

    def _current_mtimes(self) -> Dict[str, float]:
        mtimes = {str(p): p.stat().st_mtime for p in self.root.glob("*.json")}
        mtimes[str(self.env_file)] = self.env_file.stat().st_mtime if self.env_file.exists() else 0.0
        return mtimes

    def reload(self):
        env = self._read_env()
        data, mtimes = self._read_json()
        mtimes[str(self.env_file)] = self.env_file.stat().st_mtime if self.env_file.exists() else 0.0
        with self._lock:
            self._env, self._json, self._mtimes = env, data, mtimes

    def get(self, key: str, default=None):
        val = self._env.get(key)
        if val is None:
            val = os.getenv(key)
        return val if val is not None else default

    def get_int(self, key: str, default: int = 0) -> int:
        try:
            return int(self.get(key, default))
        except (TypeError, ValueError):
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        try:
            return float(self.get(key, default))
        except (TypeError, ValueError):
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        val = self.get(key)
        if val is None:
            return default
        return str(val).strip().lower() in TRUTHY

    def get_json(self, *keys, default=None):
        """按层级读取合并后的 json，例如 get_json('marketplace', 'listings')"""
        node = self._json
        for k in keys:
            if not isinstance(node, dict) or k not in node:
                return default
            node = node[k]
        return node

    def _watch(self):
        while True:
            time.sleep(self.watch_interval)
            try:
                if self._current_mtimes() != self._mtimes:
                    self.reload()
            except OSError:
                # 文件在扫描过程中被删除/替换，下一轮再试
                continue


# blockreceipt/core/config.py -> 项目根目录
PROJECT_ROOT = Path(__file__).resolve().parents[2]
config = Config(PROJECT_ROOT)

LOG_DIR = Path(os.getenv("LOG_DIR", PROJECT_ROOT / "logs"))
