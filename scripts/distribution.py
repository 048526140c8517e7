#!/usr/bin/env python3
"""加权分流表计算

把当前可用的 VPN 接口 (mark, weight) 列表映射为 [0, 99] 上的连续区间划分，
新连接通过 `numgen random mod 100` 落到某个区间，从而按权重分配出口。

    weights [2, 1, 1], marks [A, B, C]
    total = 4
    A: [0, 50]    (2/4 -> 50)
    B: [51, 75]   (3/4 -> 75)
    C: [76, 99]   最后一个区间固定以 99 结束，吸收取整余数

计算是纯函数，不依赖字典迭代顺序：输入顺序即配置顺序。
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple

BUCKET_RANGE = 100
LAST_BUCKET_END = BUCKET_RANGE - 1

KIND_REJECT = "reject"
KIND_SINGLE = "single"
KIND_WEIGHTED = "weighted"


def effective_weight(weight: int) -> int:
    """权重 <= 0 时按 1 处理"""
    return weight if weight >= 1 else 1


@dataclass(frozen=True)
class Bucket:
    """[start, end] 闭区间对应一个 mark；start > end 表示零宽度区间"""
    start: int
    end: int
    tag: str

    @property
    def is_empty(self) -> bool:
        return self.start > self.end

    @property
    def width(self) -> int:
        return 0 if self.is_empty else self.end - self.start + 1


@dataclass(frozen=True)
class DistributionTable:
    buckets: Tuple[Bucket, ...] = ()

    @property
    def kind(self) -> str:
        if not self.buckets:
            return KIND_REJECT
        if len(self.buckets) == 1:
            return KIND_SINGLE
        return KIND_WEIGHTED

    @property
    def single_tag(self) -> Optional[str]:
        if self.kind != KIND_SINGLE:
            return None
        return self.buckets[0].tag

    def lookup(self, value: int) -> Optional[str]:
        """返回 value 落入的区间的 tag"""
        for bucket in self.buckets:
            if bucket.start <= value <= bucket.end:
                return bucket.tag
        return None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "buckets": [
                {"start": b.start, "end": b.end, "tag": b.tag} for b in self.buckets
            ],
        }


def compute_distribution(entries: Iterable[Tuple[str, int]]) -> DistributionTable:
    """计算分流表

    Args:
        entries: 按配置顺序排列的 (tag, weight)

    Returns:
        0 个输入 -> 空表（调用方安装 reject）
        1 个输入 -> 覆盖 [0, 99] 的单区间
        N 个输入 -> 连续区间，end_i = floor(累计权重 / total * 100)，
                    最后一个区间强制以 99 结束
    """
    items: Sequence[Tuple[str, int]] = list(entries)
    if not items:
        return DistributionTable()
    if len(items) == 1:
        return DistributionTable((Bucket(0, LAST_BUCKET_END, items[0][0]),))

    total = sum(effective_weight(weight) for _, weight in items)
    buckets = []
    start = 0
    cumulative = 0
    for index, (tag, weight) in enumerate(items):
        cumulative += effective_weight(weight)
        if index == len(items) - 1:
            end = LAST_BUCKET_END
        else:
            # 整数运算，避免浮点误差导致同一输入得到不同结果
            end = min(cumulative * BUCKET_RANGE // total, LAST_BUCKET_END)
        buckets.append(Bucket(start, end, tag))
        start = max(start, end + 1)
    return DistributionTable(tuple(buckets))
