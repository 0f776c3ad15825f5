"""
声纹档案存储

单次会话内存中的 A / B 声纹档案，由校准完成时整体替换
"""

import logging
import threading
import time
from dataclasses import replace
from typing import Dict, Optional

from .models import Speaker, VoiceProfile, SPEAKERS

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class ProfileStore:
    """
    声纹档案存储

    每个会话一个实例。读多写少：实时帧读取快照，校准完成时整体替换。
    """

    def __init__(self, max_age_days: float = 7.0, min_quality: float = 0.15):
        """
        初始化档案存储

        Args:
            max_age_days: 档案有效期（天）
            min_quality: 档案质量下限，低于该值需要重新校准
        """
        self.max_age_days = max_age_days
        self.min_quality = min_quality

        self._profiles: Dict[Speaker, VoiceProfile] = {}
        self._last_calibration_time = 0.0
        self._lock = threading.Lock()

        logger.info(f"ProfileStore 初始化: max_age={max_age_days}天, min_quality={min_quality}")

    def get(self, speaker: Speaker) -> Optional[VoiceProfile]:
        with self._lock:
            return self._profiles.get(Speaker(speaker))

    def snapshot(self) -> Dict[Speaker, VoiceProfile]:
        """当前档案的浅拷贝（档案本身不可变）"""
        with self._lock:
            return dict(self._profiles)

    def replace_all(self, profiles: Dict[Speaker, VoiceProfile],
                    calibrated_at: Optional[float] = None):
        """
        用新一次校准的结果整体替换档案

        Args:
            profiles: {speaker: profile}
            calibrated_at: 校准完成时间，默认当前时间
        """
        for speaker, profile in profiles.items():
            if profile.speaker != speaker:
                raise ValueError(f"档案说话人不一致: key={speaker}, profile={profile.speaker}")

        with self._lock:
            self._profiles = dict(profiles)
            self._last_calibration_time = time.time() if calibrated_at is None else calibrated_at

        logger.info(f"声纹档案已替换: speakers={[s.value for s in profiles]}")

    def mark_used(self, speaker: Speaker, now: Optional[float] = None):
        """更新档案最后使用时间（替换为新副本）"""
        with self._lock:
            profile = self._profiles.get(speaker)
            if profile is not None:
                self._profiles[speaker] = profile.touch(now)

    def has_profiles(self) -> bool:
        with self._lock:
            return bool(self._profiles)

    def is_calibrated(self) -> bool:
        """两位说话人都有档案"""
        with self._lock:
            return all(speaker in self._profiles for speaker in SPEAKERS)

    def is_expired(self, profile: VoiceProfile, now: Optional[float] = None) -> bool:
        return profile.age_seconds(now) > self.max_age_days * SECONDS_PER_DAY

    def needs_recalibration(self, now: Optional[float] = None) -> bool:
        """
        是否需要重新校准

        缺少任一档案、档案过期或质量低于下限时返回 True
        """
        profiles = self.snapshot()
        for speaker in SPEAKERS:
            profile = profiles.get(speaker)
            if profile is None:
                return True
            if self.is_expired(profile, now):
                return True
            if profile.quality < self.min_quality:
                return True
        return False

    def average_quality(self) -> float:
        profiles = self.snapshot()
        if not profiles:
            return 0.0
        return sum(p.quality for p in profiles.values()) / len(profiles)

    @property
    def last_calibration_time(self) -> float:
        with self._lock:
            return self._last_calibration_time

    def clear(self):
        with self._lock:
            self._profiles = {}
            self._last_calibration_time = 0.0
        logger.info("声纹档案已清空")

    def get_statistics(self) -> dict:
        profiles = self.snapshot()
        return {
            'speakers': [speaker.value for speaker in profiles],
            'average_quality': self.average_quality(),
            'last_calibration_time': self.last_calibration_time,
            'needs_recalibration': self.needs_recalibration(),
        }
