"""
感知指紋快取 — 以 (path, mtime) 為鍵，跨次執行重用已算過的指紋

儲存格式（單一 JSON 檔）：
  { "<path>": {"hash": "gradient:0f3c...", "mtime": 1700000000}, ... }

生命週期：
  - 引擎啟動時整份載入記憶體；檔案壞掉 → 視為空快取並記錄 warning
  - mtime 不符即視為 miss，舊資料不主動清除
  - 一次偵測結束時 flush 一次（不逐筆寫入，避免高並行下互搶檔案）

並行規則：
  - 多個 lookup 可同時進行，record / flush 獨佔
  - lookup + record 不保證原子性；兩個 worker 同時算同一張圖時後寫者勝出，
    結果相同所以無害
"""

import json
import logging
import os
import tempfile
import threading

from .hasher import Fingerprint

logger = logging.getLogger(__name__)

CACHE_DIR_NAME = "dupfinder-cache"
CACHE_FILENAME = "hash_cache.json"


def default_cache_dir() -> str:
    """系統暫存目錄下的快取資料夾（Windows / Linux / macOS 皆可用）"""
    return os.path.join(tempfile.gettempdir(), CACHE_DIR_NAME)


class _ReadWriteLock:
    """讀者共享、寫者獨佔的鎖（寫者等待時新讀者也會排隊，避免寫者餓死）"""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()


class FingerprintCache:
    """path → (mtime, fingerprint) 的持久化對照表"""

    def __init__(self, file_path: str | None = None):
        self.file_path = file_path
        self._entries: dict[str, tuple[int, Fingerprint]] = {}
        self._lock = _ReadWriteLock()

    @classmethod
    def open(cls, cache_dir: str | None = None) -> "FingerprintCache":
        """
        載入 cache_dir 下的快取檔。

        檔案不存在 → 空快取；檔案損毀或無法讀取 → 空快取 + warning，不拋例外。
        """
        if cache_dir is None:
            cache_dir = default_cache_dir()
        cache = cls(os.path.join(cache_dir, CACHE_FILENAME))
        cache._load()
        return cache

    @classmethod
    def in_memory(cls) -> "FingerprintCache":
        """不落盤的快取，flush() 不做任何事"""
        return cls(None)

    def _load(self) -> None:
        if self.file_path is None or not os.path.exists(self.file_path):
            return

        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(
                "Cannot load fingerprint cache, starting empty: %s (%s)",
                self.file_path,
                e,
            )
            return

        if not isinstance(raw, dict):
            logger.warning(
                "Fingerprint cache has unexpected format, starting empty: %s",
                self.file_path,
            )
            return

        skipped = 0
        for path, entry in raw.items():
            try:
                mtime = entry["mtime"]
                if not isinstance(mtime, int) or isinstance(mtime, bool):
                    raise TypeError("mtime must be an integer")
                fingerprint = Fingerprint.from_string(entry["hash"])
            except (KeyError, TypeError, ValueError):
                # 舊版或不相容的項目 → 當作 miss
                skipped += 1
                continue
            self._entries[path] = (mtime, fingerprint)

        if skipped:
            logger.debug("Skipped %d incompatible cache entries", skipped)
        logger.debug(
            "Loaded %d cached fingerprints from %s",
            len(self._entries),
            self.file_path,
        )

    def lookup(self, path: str, mtime: float) -> Fingerprint | None:
        """mtime（秒）與快取完全相同才回傳指紋，否則 None"""
        self._lock.acquire_read()
        try:
            entry = self._entries.get(path)
        finally:
            self._lock.release_read()

        if entry is None:
            return None
        cached_mtime, fingerprint = entry
        if cached_mtime != int(mtime):
            return None
        return fingerprint

    def record(self, path: str, mtime: float, fingerprint: Fingerprint) -> None:
        """新增或覆寫 path 的快取項目"""
        self._lock.acquire_write()
        try:
            self._entries[path] = (int(mtime), fingerprint)
        finally:
            self._lock.release_write()

    def flush(self) -> None:
        """
        將整份快取寫回磁碟（先寫暫存檔再 os.replace，避免寫到一半的檔案）。

        Raises:
            OSError: 無法建立目錄或寫入
        """
        if self.file_path is None:
            return

        self._lock.acquire_write()
        try:
            payload = {
                path: {"hash": str(fingerprint), "mtime": mtime}
                for path, (mtime, fingerprint) in self._entries.items()
            }
        finally:
            self._lock.release_write()

        directory = os.path.dirname(self.file_path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=".hash_cache_", suffix=".tmp", dir=directory,
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(payload, f, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.file_path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

        logger.debug("Flushed %d fingerprints to %s", len(payload), self.file_path)

    def __len__(self) -> int:
        self._lock.acquire_read()
        try:
            return len(self._entries)
        finally:
            self._lock.release_read()

    def __contains__(self, path: str) -> bool:
        self._lock.acquire_read()
        try:
            return path in self._entries
        finally:
            self._lock.release_read()
