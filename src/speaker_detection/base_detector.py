"""
基础说话人检测器

不依赖声纹档案：能量 VAD 判断是否有人说话，轮换启发式猜测是谁在说话
"""

import logging
from typing import Optional

from vad.activity_detector import ActivityDetector, ActivityResult
from vad.turn_tracker import TurnTracker

from .models import Speaker, BaseMethod, SpeakerDecision

logger = logging.getLogger(__name__)


class BaseSpeakerDetector:
    """
    基础检测器

    置信度取活动检测置信度，说话人取轮换跟踪器的当前说话人。
    有状态（轮换状态），必须按帧到达顺序调用。
    """

    def __init__(
        self,
        energy_threshold: float = 0.01,
        pause_threshold_ms: int = 400,
        initial_speaker: Speaker = Speaker.A,
        debug: bool = False
    ):
        """
        初始化基础检测器

        Args:
            energy_threshold: RMS 能量阈值
            pause_threshold_ms: 换人停顿阈值（毫秒）
            initial_speaker: 初始说话人
            debug: 调试模式
        """
        self.activity_detector = ActivityDetector(threshold=energy_threshold, debug=debug)
        self.turn_tracker = TurnTracker(
            speakers=(Speaker.A, Speaker.B),
            pause_threshold_ms=pause_threshold_ms,
            initial_speaker=initial_speaker,
        )

    def detect_activity(self, audio_data) -> ActivityResult:
        return self.activity_detector.detect(audio_data)

    def decide(self, activity: ActivityResult, timestamp: float) -> SpeakerDecision:
        """
        对一个语音帧做出基础判定

        Args:
            activity: 该帧的活动检测结果（必须是语音）
            timestamp: 帧时间戳（秒）

        Returns:
            SpeakerDecision，method 为 turn_switch 或 turn_continue
        """
        turn = self.turn_tracker.update(timestamp)

        if turn.switched:
            method = BaseMethod.TURN_SWITCH
            reasoning = f"停顿 {turn.elapsed_ms:.0f}ms 超过阈值，切换到说话人 {turn.speaker.value}"
        else:
            method = BaseMethod.TURN_CONTINUE
            reasoning = f"未检测到换人停顿，说话人 {turn.speaker.value} 继续发言"

        return SpeakerDecision(
            speaker=turn.speaker,
            confidence=min(1.0, max(0.0, activity.confidence)),
            method=method,
            reasoning=reasoning,
            timestamp=timestamp,
        )

    def detect(self, audio_data, timestamp: float) -> Optional[SpeakerDecision]:
        """
        检测单帧

        Returns:
            SpeakerDecision；静音帧返回 None 且不改变轮换状态
        """
        activity = self.detect_activity(audio_data)
        if not activity.is_speech:
            return None
        return self.decide(activity, timestamp)

    def set_active_speaker(self, speaker: Speaker):
        self.turn_tracker.set_active_speaker(Speaker(speaker))

    def set_pause_threshold(self, pause_threshold_ms) -> int:
        return self.turn_tracker.set_pause_threshold(pause_threshold_ms)

    def reset(self):
        self.turn_tracker.reset()
        self.activity_detector.reset_statistics()

    def get_statistics(self) -> dict:
        stats = self.activity_detector.get_statistics()
        stats.update({
            'current_speaker': self.turn_tracker.current_speaker.value,
            'pause_threshold_ms': self.turn_tracker.pause_threshold_ms,
            'turn_switches': self.turn_tracker.turn_switches,
        })
        return stats
