"""
检测统计与重新校准建议
"""

import logging
import threading
from dataclasses import replace
from typing import Optional

from .models import (
    DetectionResult, DetectionStats, RecalibrationRecommendation,
    RecalibrationReason, Urgency, SPEAKERS,
)
from .profile_store import ProfileStore

logger = logging.getLogger(__name__)


class DetectionStatistics:
    """
    检测统计

    每个会话一个实例，只在显式 reset() 时清零
    """

    def __init__(self):
        self._stats = self._empty()
        self._lock = threading.Lock()

    @staticmethod
    def _empty() -> DetectionStats:
        return DetectionStats(profile_matches={speaker: 0 for speaker in SPEAKERS})

    def update(self, result: DetectionResult):
        """
        记录一次检测结果

        Args:
            result: 融合结果
        """
        with self._lock:
            stats = self._stats
            stats.total_detections += 1
            if result.is_calibrated:
                stats.calibrated_detections += 1
                if result.speaker is not None:
                    stats.profile_matches[result.speaker] = stats.profile_matches.get(result.speaker, 0) + 1
            else:
                stats.uncalibrated_detections += 1

            # 增量平均
            stats.avg_confidence += (result.confidence - stats.avg_confidence) / stats.total_detections

    def snapshot(self) -> DetectionStats:
        with self._lock:
            return replace(self._stats, profile_matches=dict(self._stats.profile_matches))

    def reset(self):
        with self._lock:
            self._stats = self._empty()
        logger.info("检测统计已重置")


class RecalibrationAdvisor:
    """
    重新校准建议

    规则按顺序匹配：未校准 → 档案过期或质量不足 → 平均置信度偏低 → 无需校准
    """

    def __init__(self, low_accuracy_threshold: float = 0.7, min_detections: int = 20):
        """
        Args:
            low_accuracy_threshold: 平均置信度下限
            min_detections: 判断准确率偏低所需的最少检测次数
        """
        self.low_accuracy_threshold = low_accuracy_threshold
        self.min_detections = min_detections

    def advise(self, store: ProfileStore, stats: DetectionStats,
               now: Optional[float] = None) -> RecalibrationRecommendation:
        if not store.has_profiles():
            recommendation = RecalibrationRecommendation(
                should_recalibrate=True,
                reason=RecalibrationReason.NO_CALIBRATION,
                urgency=Urgency.HIGH,
                expected_improvement=0.4,
            )
        elif store.needs_recalibration(now):
            recommendation = RecalibrationRecommendation(
                should_recalibrate=True,
                reason=RecalibrationReason.PROFILE_EXPIRED,
                urgency=Urgency.MEDIUM,
                expected_improvement=0.2,
            )
        elif (stats.avg_confidence < self.low_accuracy_threshold
              and stats.total_detections >= self.min_detections):
            recommendation = RecalibrationRecommendation(
                should_recalibrate=True,
                reason=RecalibrationReason.LOW_ACCURACY,
                urgency=Urgency.MEDIUM,
                expected_improvement=0.25,
            )
        else:
            recommendation = RecalibrationRecommendation(
                should_recalibrate=False,
                reason=RecalibrationReason.PROFILE_CURRENT,
                urgency=Urgency.NONE,
                expected_improvement=0.0,
            )

        if recommendation.should_recalibrate:
            logger.info(f"建议重新校准: reason={recommendation.reason.value}, "
                        f"urgency={recommendation.urgency.value}")
        return recommendation
