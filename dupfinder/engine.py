"""
重複圖片偵測引擎 — exact 預篩 + 感知指紋相似搜尋

流程：
  1. 依檔案大小分桶；同大小 >= 2 的才是 exact 候選，其餘直接當單張
  2. exact 候選算 partial signature (ThreadPool)，(size, signature) 相同 >= 2 張
     即為 exact 組；落單的退回單張處理
  3. 挑代表者：單張 + 每個 exact 組的第一張（依輸入順序）
  4. 代表者算感知指紋 (較小的 ThreadPool，限制同時解碼的記憶體)，
     先查 (path, mtime) 快取，miss 才解碼
  5. 指紋建 BK-tree，另記「指紋 → 擁有者 index」反查表（不同檔案可能同指紋）
  6. 依順序取未被認領的項目做半徑查詢，認領命中者，並把代表者的
     exact 兄弟接回同一組；>= 2 張才輸出
  7. flush 快取，統計結果

錯誤處理：
  - 單一檔案失敗（不存在、讀不到、解不開）只計數並略過，不中斷
  - 快取讀寫失敗只記 warning
  - 只有設定錯誤（參數不合法、thread pool 建不起來）會拋給呼叫端
"""

import logging
import os
import queue
import threading
import time
from collections import defaultdict
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import NamedTuple

from .bktree import BKTree
from .cache import FingerprintCache
from .exceptions import (
    InvalidParameterError,
    UnsupportedVariantError,
    WorkerPoolError,
)
from .hasher import (
    Fingerprint,
    HashAlgorithm,
    compute_partial_signature,
    fingerprint_distance,
    fingerprint_file,
    init_heic_support,
)

logger = logging.getLogger(__name__)

# 預設 Hamming distance 門檻（64-bit 指紋）
DEFAULT_THRESHOLD = 5
MAX_THRESHOLD = 64

# partial hash 很輕，用大 pool；解碼吃記憶體，用小 pool
PARTIAL_HASH_WORKERS = 16
FINGERPRINT_WORKERS = 8

PROGRESS_LOG_INTERVAL = 1000

# 派送 thread 的停止訊號
_STOP_DISPATCH = object()


class FileRecord(NamedTuple):
    """偵測期間的一個輸入檔案"""
    path: str
    filename: str
    size: int

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "filename": self.filename,
            "size_bytes": self.size,
        }


class DuplicateGroup(NamedTuple):
    """判定為重複的一組檔案（至少 2 個）"""
    members: list[FileRecord]

    def to_dict(self) -> dict:
        return {"members": [m.to_dict() for m in self.members]}


class DetectionResult(NamedTuple):
    groups: list[DuplicateGroup]
    total_duplicates: int
    processed: int
    errors: int

    def to_dict(self) -> dict:
        return {
            "groups": [g.to_dict() for g in self.groups],
            "total_duplicates": self.total_duplicates,
            "processed": self.processed,
            "errors": self.errors,
        }


ProgressCallback = Callable[[FileRecord], None]


class DetectionRun:
    """
    一次 detect_duplicates() 呼叫的執行期狀態。

    錯誤計數與進度計數可被任何 worker thread 更新。
    on_progress 由單一派送 thread 依序呼叫，worker 只負責排入佇列，
    所以慢的 callback 不會拖住解碼；close() 會等佇列送完。
    """

    def __init__(
        self,
        paths: Iterable[str],
        cache: FingerprintCache,
        on_progress: ProgressCallback | None = None,
    ):
        # 重複的路徑只保留第一次出現
        self.paths: list[str] = list(dict.fromkeys(paths))
        self.cache = cache
        self.on_progress = on_progress
        self.errors = 0
        self.ticks = 0
        self._lock = threading.Lock()
        self._stage_total = 0
        self._stage_start = time.time()
        self._progress_queue: queue.SimpleQueue = queue.SimpleQueue()
        self._dispatcher: threading.Thread | None = None

    def record_error(self, path: str, stage: str, exc: Exception) -> None:
        with self._lock:
            self.errors += 1
        logger.error("%s failed: %s: %s", stage, os.path.basename(path), exc)

    def add_errors(self, count: int) -> None:
        with self._lock:
            self.errors += count

    def start_stage(self, total: int) -> None:
        with self._lock:
            self.ticks = 0
            self._stage_total = total
            self._stage_start = time.time()

    def tick(self, record: FileRecord) -> None:
        """每個成功處理的項目呼叫一次；只排入佇列，不等 callback"""
        with self._lock:
            self.ticks += 1
            done = self.ticks
            if self.on_progress is not None and self._dispatcher is None:
                self._dispatcher = threading.Thread(
                    target=self._dispatch_progress,
                    name="progress-dispatch",
                    daemon=True,
                )
                self._dispatcher.start()

        if self.on_progress is not None:
            self._progress_queue.put(record)

        if done % PROGRESS_LOG_INTERVAL == 0:
            self._log_progress(done)

    def _dispatch_progress(self) -> None:
        while True:
            record = self._progress_queue.get()
            if record is _STOP_DISPATCH:
                return
            try:
                self.on_progress(record)
            except Exception as e:
                logger.debug("Progress callback failed: %s", e)

    def close(self) -> None:
        """等已排入的 progress 全部送出後結束派送 thread"""
        with self._lock:
            dispatcher, self._dispatcher = self._dispatcher, None
        if dispatcher is None:
            return
        self._progress_queue.put(_STOP_DISPATCH)
        dispatcher.join()

    def _log_progress(self, done: int) -> None:
        elapsed = time.time() - self._stage_start
        speed = done / elapsed if elapsed > 0 else 0
        safe_total = max(self._stage_total, done)
        remaining = (safe_total - done) / speed if speed > 0 else 0
        logger.info(
            "Progress: %d/%d (%d%%) ETA: %.0fs",
            done,
            safe_total,
            done * 100 // safe_total,
            remaining,
        )


def _run_in_pool(func, items: list, workers: int, name: str) -> list:
    """
    在固定大小的 ThreadPool 執行 func，等整批完成後依輸入順序回傳結果。

    Raises:
        WorkerPoolError: pool 建立或派工失敗
    """
    try:
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=name)
    except (ValueError, RuntimeError) as e:
        raise WorkerPoolError(
            f"Cannot start {name} pool with {workers} workers: {e}"
        ) from e

    with pool:
        try:
            return list(pool.map(func, items))
        except RuntimeError as e:
            raise WorkerPoolError(f"{name} pool failed: {e}") from e


def collect_records(run: DetectionRun) -> list[FileRecord]:
    """stat 每個輸入路徑；失敗的計入錯誤"""
    records: list[FileRecord] = []
    for path in run.paths:
        try:
            size = os.path.getsize(path)
        except OSError as e:
            run.record_error(path, "Stat", e)
            continue
        records.append(FileRecord(path, os.path.basename(path), size))
    return records


def bucket_by_size(
    records: list[FileRecord],
) -> tuple[list[FileRecord], list[FileRecord]]:
    """
    依大小分桶（大小不同不可能是 exact 重複）。

    Returns:
        (exact_candidates, singletons)，皆保持輸入順序
    """
    by_size: dict[int, int] = defaultdict(int)
    for record in records:
        by_size[record.size] += 1

    candidates: list[FileRecord] = []
    singletons: list[FileRecord] = []
    for record in records:
        if by_size[record.size] > 1:
            candidates.append(record)
        else:
            singletons.append(record)
    return candidates, singletons


def find_exact_groups(
    candidates: list[FileRecord],
    run: DetectionRun,
    workers: int = PARTIAL_HASH_WORKERS,
) -> tuple[list[list[FileRecord]], list[FileRecord]]:
    """
    對同大小候選算 partial signature 並以 (size, signature) 分組。

    Returns:
        (exact_groups, leftovers):
            exact_groups: >= 2 個成員的組，組內保持輸入順序
            leftovers: 落單的候選，退回單張處理
    """
    def _signature_one(record: FileRecord) -> str | None:
        try:
            return compute_partial_signature(record.path)
        except Exception as e:
            run.record_error(record.path, "Partial hash", e)
            return None

    signatures = _run_in_pool(_signature_one, candidates, workers, "partial-hash")

    buckets: dict[tuple[int, str], list[FileRecord]] = defaultdict(list)
    for record, signature in zip(candidates, signatures):
        if signature is not None:
            buckets[(record.size, signature)].append(record)

    exact_groups: list[list[FileRecord]] = []
    leftovers: list[FileRecord] = []
    for members in buckets.values():
        if len(members) > 1:
            exact_groups.append(members)
        else:
            leftovers.extend(members)
    return exact_groups, leftovers


def select_representatives(
    records: list[FileRecord],
    singles: list[FileRecord],
    exact_groups: list[list[FileRecord]],
) -> tuple[list[FileRecord], dict[str, list[FileRecord]]]:
    """
    組出感知指紋要掃的清單。

    exact 組只派第一個成員（代表者）進入相似搜尋，其餘成員之後再接回。
    清單依原始輸入順序排列，代表者佔它自己在輸入中的位置。

    Returns:
        (scan_set, siblings): siblings 為 代表者 path → 其他成員
    """
    siblings = {group[0].path: group[1:] for group in exact_groups}
    eligible = {r.path for r in singles}
    eligible.update(siblings)

    scan_set = [r for r in records if r.path in eligible]
    return scan_set, siblings


def fingerprint_candidates(
    scan_set: list[FileRecord],
    run: DetectionRun,
    algorithm: HashAlgorithm = HashAlgorithm.GRADIENT,
    workers: int = FINGERPRINT_WORKERS,
) -> list[tuple[FileRecord, Fingerprint]]:
    """
    對每個項目取得感知指紋：快取命中直接用，否則解碼計算後寫回快取。

    失敗的項目計入錯誤並從結果中移除。回傳保持 scan_set 順序。
    """
    run.start_stage(len(scan_set))

    def _fingerprint_one(record: FileRecord) -> Fingerprint | None:
        try:
            mtime = os.stat(record.path).st_mtime
            fingerprint = run.cache.lookup(record.path, mtime)
            if fingerprint is None or fingerprint.algorithm != algorithm:
                fingerprint = fingerprint_file(record.path, algorithm)
                run.cache.record(record.path, mtime, fingerprint)
        except Exception as e:
            run.record_error(record.path, "Fingerprint", e)
            return None
        run.tick(record)
        return fingerprint

    results = _run_in_pool(_fingerprint_one, scan_set, workers, "fingerprint")
    return [
        (record, fingerprint)
        for record, fingerprint in zip(scan_set, results)
        if fingerprint is not None
    ]


def extract_groups(
    hashed: list[tuple[FileRecord, Fingerprint]],
    siblings: dict[str, list[FileRecord]],
    threshold: int,
) -> list[DuplicateGroup]:
    """
    BK-tree 半徑查詢分組，並把 exact 兄弟接回代表者所在的組。

    依 hashed 順序走訪：第一個未被認領的項目當種子，認領所有距離
    <= threshold 且尚未被認領的項目（依 hashed 順序，不做遞移擴張）。
    """
    tree: BKTree[Fingerprint] = BKTree(fingerprint_distance)
    owners: dict[Fingerprint, list[int]] = defaultdict(list)
    for idx, (_, fingerprint) in enumerate(hashed):
        if fingerprint not in owners:
            tree.insert(fingerprint)
        owners[fingerprint].append(idx)

    claimed = [False] * len(hashed)
    groups: list[DuplicateGroup] = []

    for i, (_, fingerprint) in enumerate(hashed):
        if claimed[i]:
            continue

        # 查詢自己一定命中（距離 0），所以 i 必在 matched 之中
        matched = sorted(
            idx
            for _, found in tree.query(fingerprint, threshold)
            for idx in owners[found]
            if not claimed[idx]
        )

        members: list[FileRecord] = []
        for idx in matched:
            claimed[idx] = True
            rep = hashed[idx][0]
            members.append(rep)
            members.extend(siblings.get(rep.path, ()))

        if len(members) > 1:
            groups.append(DuplicateGroup(members))

    return groups


def _validate_args(threshold: int, algorithm, *worker_counts: int) -> HashAlgorithm:
    """檢查參數，回傳正規化後的演算法"""
    if (
        not isinstance(threshold, int)
        or isinstance(threshold, bool)
        or not 0 <= threshold <= MAX_THRESHOLD
    ):
        raise InvalidParameterError(
            f"threshold must be an integer in 0..{MAX_THRESHOLD}, got {threshold!r}"
        )
    for workers in worker_counts:
        if not isinstance(workers, int) or isinstance(workers, bool) or workers < 1:
            raise InvalidParameterError(
                f"worker count must be a positive integer, got {workers!r}"
            )
    try:
        algorithm = HashAlgorithm(algorithm)
    except ValueError as e:
        raise InvalidParameterError(f"Unknown algorithm: {algorithm!r}") from e
    if algorithm is HashAlgorithm.EXACT:
        raise UnsupportedVariantError(
            "EXACT cannot be used for similarity search; "
            "choose gradient, double_gradient or mean"
        )
    return algorithm


def detect_duplicates(
    paths: Iterable[str],
    threshold: int = DEFAULT_THRESHOLD,
    *,
    cache: FingerprintCache | None = None,
    cache_dir: str | None = None,
    use_cache: bool = True,
    algorithm: HashAlgorithm = HashAlgorithm.GRADIENT,
    on_progress: ProgressCallback | None = None,
    hash_workers: int = PARTIAL_HASH_WORKERS,
    fingerprint_workers: int = FINGERPRINT_WORKERS,
) -> DetectionResult:
    """
    在給定的圖片路徑中找出重複與近似重複的組。

    Args:
        paths: 已由掃描器過濾過的圖片路徑
        threshold: 感知指紋的最大 Hamming distance (0-64)，0 = 指紋必須完全相同
        cache: 指定的快取物件；None 時依 use_cache / cache_dir 開啟
        cache_dir: 快取資料夾（預設為系統暫存目錄下）
        use_cache: False 時使用不落盤的快取
        algorithm: 本次執行固定使用的感知指紋演算法
        on_progress: 每個成功取得指紋的項目呼叫一次（可能在 worker thread）
        hash_workers: partial hash 的 thread 數
        fingerprint_workers: 感知指紋的 thread 數

    Returns:
        DetectionResult(groups, total_duplicates, processed, errors)

    Raises:
        InvalidParameterError: threshold、algorithm 或 worker 數量不合法
        UnsupportedVariantError: algorithm 為 EXACT
        WorkerPoolError: thread pool 建立失敗
    """
    algorithm = _validate_args(
        threshold, algorithm, hash_workers, fingerprint_workers,
    )

    if cache is None:
        if use_cache:
            cache = FingerprintCache.open(cache_dir)
        else:
            cache = FingerprintCache.in_memory()

    init_heic_support()
    run = DetectionRun(paths, cache, on_progress)
    start_time = time.time()

    # Step 1
    logger.info("[1/4] Size bucketing %d paths...", len(run.paths))
    records = collect_records(run)
    candidates, singletons = bucket_by_size(records)
    logger.info(
        "  Same-size candidates: %d, unique sizes: %d",
        len(candidates),
        len(singletons),
    )

    # Step 2
    logger.info("[2/4] Partial hash prefilter...")
    exact_groups, leftovers = find_exact_groups(candidates, run, hash_workers)
    logger.info("  Exact groups: %d", len(exact_groups))

    # Step 3 + 4
    scan_set, siblings = select_representatives(
        records, singletons + leftovers, exact_groups,
    )
    logger.info(
        "[3/4] Fingerprinting %d images (%s, %d exact-group reps)...",
        len(scan_set),
        algorithm.value,
        len(siblings),
    )
    try:
        hashed = fingerprint_candidates(
            scan_set, run, algorithm, fingerprint_workers,
        )
    finally:
        run.close()

    # 代表者失敗 → 兄弟一起排除，也計入錯誤
    hashed_paths = {record.path for record, _ in hashed}
    for rep_path, others in siblings.items():
        if rep_path not in hashed_paths:
            run.add_errors(len(others))

    # Step 5 + 6
    logger.info("[4/4] Grouping (threshold=%d)...", threshold)
    groups = extract_groups(hashed, siblings, threshold)

    # Step 7
    try:
        cache.flush()
    except OSError as e:
        logger.warning("Cannot save fingerprint cache: %s", e)

    total_duplicates = sum(len(g.members) - 1 for g in groups)
    logger.info(
        "Done! %.1fs, %d group(s), %d duplicate(s), %d error(s)",
        time.time() - start_time,
        len(groups),
        total_duplicates,
        run.errors,
    )

    return DetectionResult(
        groups=groups,
        total_duplicates=total_duplicates,
        processed=len(run.paths),
        errors=run.errors,
    )
