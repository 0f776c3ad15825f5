"""
轮流发言跟踪

两人对话中，停顿超过阈值即认为换人说话
"""

import logging
from dataclasses import dataclass
from typing import Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

MIN_PAUSE_THRESHOLD_MS = 100
MAX_PAUSE_THRESHOLD_MS = 2000


@dataclass(frozen=True)
class TurnDecision:
    """单个语音帧的轮换判定"""
    speaker: Hashable
    switched: bool
    elapsed_ms: Optional[float]  # 距上一个语音帧的间隔，首帧为 None


class TurnTracker:
    """
    轮换启发式

    状态：当前说话人、上一个语音帧的时间戳。
    只处理语音帧，静音帧不应调用 update()。
    """

    def __init__(
        self,
        speakers: Tuple[Hashable, Hashable] = ('A', 'B'),
        pause_threshold_ms: int = 400,
        initial_speaker: Optional[Hashable] = None
    ):
        """
        初始化轮换跟踪器

        Args:
            speakers: 两位说话人的标识
            pause_threshold_ms: 换人停顿阈值（毫秒），限制在 100-2000
            initial_speaker: 初始说话人，默认 speakers[0]
        """
        if len(speakers) != 2 or speakers[0] == speakers[1]:
            raise ValueError(f"speakers 必须是两个不同的标识: {speakers}")

        self.speakers = tuple(speakers)
        self.pause_threshold_ms = self._clamp_threshold(pause_threshold_ms)
        self.initial_speaker = self.speakers[0] if initial_speaker is None else initial_speaker
        self._check_speaker(self.initial_speaker)

        self.current_speaker = self.initial_speaker
        self.last_speech_timestamp: Optional[float] = None

        # 统计信息
        self.turn_switches = 0

        logger.info(f"TurnTracker 初始化: speakers={self.speakers}, "
                    f"pause_threshold={self.pause_threshold_ms}ms")

    @staticmethod
    def _clamp_threshold(pause_threshold_ms) -> int:
        return int(max(MIN_PAUSE_THRESHOLD_MS, min(MAX_PAUSE_THRESHOLD_MS, pause_threshold_ms)))

    def _check_speaker(self, speaker):
        if speaker not in self.speakers:
            raise ValueError(f"未知说话人: {speaker}")

    def other(self, speaker: Hashable) -> Hashable:
        return self.speakers[1] if speaker == self.speakers[0] else self.speakers[0]

    def update(self, timestamp: float) -> TurnDecision:
        """
        处理一个语音帧

        Args:
            timestamp: 帧时间戳（秒）

        Returns:
            TurnDecision，switched 表示本帧触发了换人
        """
        elapsed_ms = None
        switched = False

        if self.last_speech_timestamp is not None:
            elapsed_ms = (timestamp - self.last_speech_timestamp) * 1000.0
            if elapsed_ms > self.pause_threshold_ms:
                self.current_speaker = self.other(self.current_speaker)
                self.turn_switches += 1
                switched = True
                logger.debug(f"停顿 {elapsed_ms:.0f}ms，切换到说话人 {self.current_speaker}")

        self.last_speech_timestamp = timestamp
        return TurnDecision(speaker=self.current_speaker, switched=switched, elapsed_ms=elapsed_ms)

    def set_active_speaker(self, speaker: Hashable):
        """手动指定当前说话人"""
        self._check_speaker(speaker)
        self.current_speaker = speaker
        logger.info(f"当前说话人已设置为 {speaker}")

    def set_pause_threshold(self, pause_threshold_ms) -> int:
        """
        设置换人停顿阈值

        Args:
            pause_threshold_ms: 阈值（毫秒），超出范围时截断到 100-2000

        Returns:
            实际生效的阈值
        """
        old_threshold = self.pause_threshold_ms
        self.pause_threshold_ms = self._clamp_threshold(pause_threshold_ms)
        logger.info(f"停顿阈值已更新: {old_threshold}ms -> {self.pause_threshold_ms}ms")
        return self.pause_threshold_ms

    def reset(self):
        """重置跟踪器状态"""
        self.current_speaker = self.initial_speaker
        self.last_speech_timestamp = None
        self.turn_switches = 0
        logger.info("TurnTracker 状态已重置")
