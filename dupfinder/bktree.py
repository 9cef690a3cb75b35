"""
BK-tree — 在離散度量空間中做「距離 <= r」的半徑搜尋

用來避免 n² 兩兩比對：每個節點的子節點依「與父節點的距離」分桶，
查詢時利用三角不等式只走 [d - r, d + r] 範圍內的分支。

相同的值可以重複插入（存成距離 0 的子節點），
值到檔案的對應由呼叫端自行維護。
"""

from collections.abc import Callable
from typing import Generic, TypeVar

from .hasher import fingerprint_distance

T = TypeVar("T")


class BKTree(Generic[T]):
    """Metric index keyed by an integer distance function."""

    def __init__(self, distance: Callable[[T, T], int] = fingerprint_distance):
        self._distance = distance
        self._values: list[T] = []
        self._children: dict[int, dict[int, int]] = {}

    def __len__(self) -> int:
        return len(self._values)

    def insert(self, value: T) -> None:
        idx = len(self._values)
        self._values.append(value)
        self._children[idx] = {}
        if idx == 0:
            return

        node = 0
        while True:
            dist = self._distance(value, self._values[node])
            next_node = self._children[node].get(dist)
            if next_node is None:
                self._children[node][dist] = idx
                return
            node = next_node

    def query(self, value: T, threshold: int) -> list[tuple[int, T]]:
        """
        回傳所有距離 <= threshold 的 (distance, value)，順序不保證。

        查詢值若已在樹中，結果一定包含它自己（距離 0）。
        """
        if not self._values:
            return []

        found: list[tuple[int, T]] = []
        stack = [0]
        while stack:
            node = stack.pop()
            dist = self._distance(value, self._values[node])
            if dist <= threshold:
                found.append((dist, self._values[node]))

            lower = dist - threshold
            upper = dist + threshold
            for edge_dist, child in self._children[node].items():
                if lower <= edge_dist <= upper:
                    stack.append(child)

        return found
