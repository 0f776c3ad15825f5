"""
混合融合策略

把声纹相似度与基础检测器的判定融合为最终结果
"""

import logging
from typing import Mapping, Optional, Tuple

from .models import (
    FusionConfig, Speaker, SpeakerDecision, DetectionResult,
    DetectionQuality, DetectionMethod, SPEAKERS,
)

logger = logging.getLogger(__name__)


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


class FusionPolicy:
    """
    混合融合策略

    纯函数：输出只取决于 (相似度字典, 基础判定, 时间戳) 和配置。
    规则按顺序匹配，第一条命中的规则生效：

    1. 没有任何档案 → uncalibrated_<基础方法>
    2. 最佳相似度 > 0.8 → calibrated_profile_match
    3. 基础判定有说话人且置信度 > 0.6 → 声纹验证通过 / 冲突
    4. 最佳相似度 > 0.75 → calibrated_fallback
    5. 其他 → hybrid_fallback
    """

    def __init__(self, config: Optional[FusionConfig] = None):
        self.config = config or FusionConfig()
        self.config.validate()

        logger.info(f"FusionPolicy 初始化: profile_match={self.config.profile_match_threshold}, "
                    f"voice_similarity={self.config.voice_similarity_threshold}, "
                    f"base_confidence={self.config.base_confidence_threshold}")

    @staticmethod
    def best_match(similarities: Mapping[Speaker, float]) -> Tuple[Optional[Speaker], float]:
        """
        最佳匹配说话人

        相似度相同时按 A、B 顺序取先者
        """
        best_speaker, best_score = None, 0.0
        for speaker in SPEAKERS:
            if speaker in similarities and (best_speaker is None or similarities[speaker] > best_score):
                best_speaker, best_score = speaker, float(similarities[speaker])
        return best_speaker, best_score

    def fuse(
        self,
        similarities: Mapping[Speaker, float],
        base: SpeakerDecision,
        timestamp: Optional[float] = None
    ) -> DetectionResult:
        """
        融合一次判定

        Args:
            similarities: 与已注册档案的相似度 {speaker: similarity}，无档案时为空
            base: 基础检测器的判定
            timestamp: 结果时间戳，默认沿用基础判定的时间戳

        Returns:
            DetectionResult，置信度始终在 [0, 1]
        """
        cfg = self.config
        timestamp = base.timestamp if timestamp is None else timestamp
        similarities = {Speaker(k): float(v) for k, v in similarities.items()}
        base_confidence = _clamp(base.confidence)

        if not similarities:
            return self._build(
                speaker=base.speaker,
                confidence=base_confidence,
                method=DetectionMethod.uncalibrated(base.method),
                reasoning=f"未校准，沿用基础检测: {base.reasoning}",
                base=base,
                similarities=similarities,
                profile_quality=0.0,
                is_calibrated=False,
                timestamp=timestamp,
            )

        best_speaker, best_score = self.best_match(similarities)

        if best_score > cfg.profile_match_threshold:
            speaker = best_speaker
            confidence = best_score + cfg.calibration_confidence_boost
            method = DetectionMethod.CALIBRATED_PROFILE_MATCH
            reasoning = f"声纹高度匹配说话人 {best_speaker.value} (相似度 {best_score:.2f})"
        elif base.speaker is not None and base_confidence > cfg.base_confidence_threshold:
            speaker = base.speaker
            guessed_score = similarities.get(base.speaker, 0.0)
            if guessed_score > cfg.voice_similarity_threshold:
                confidence = base_confidence + cfg.calibration_confidence_boost * cfg.verified_boost_ratio
                method = DetectionMethod.HYBRID_CALIBRATED_VERIFIED
                reasoning = (f"基础检测结果 {speaker.value} 经声纹验证 "
                             f"(相似度 {guessed_score:.2f})，提高置信度")
            else:
                confidence = base_confidence * cfg.conflict_penalty
                method = DetectionMethod.HYBRID_CALIBRATION_CONFLICT
                reasoning = (f"基础检测结果 {speaker.value} 与声纹档案冲突 "
                             f"(相似度 {guessed_score:.2f})，降低置信度")
        elif best_score > cfg.voice_similarity_threshold:
            speaker = best_speaker
            confidence = best_score
            method = DetectionMethod.CALIBRATED_FALLBACK
            reasoning = f"基础检测置信度低，采用中等声纹匹配 {best_speaker.value} (相似度 {best_score:.2f})"
        else:
            speaker = base.speaker
            confidence = base_confidence
            method = DetectionMethod.HYBRID_FALLBACK
            reasoning = f"声纹匹配不足 (最佳相似度 {best_score:.2f})，沿用基础检测"

        return self._build(
            speaker=speaker,
            confidence=_clamp(confidence),
            method=method,
            reasoning=reasoning,
            base=base,
            similarities=similarities,
            profile_quality=best_score,
            is_calibrated=True,
            timestamp=timestamp,
        )

    @staticmethod
    def _build(speaker, confidence, method, reasoning, base, similarities,
               profile_quality, is_calibrated, timestamp) -> DetectionResult:
        agreement = 1.0 if speaker is not None and speaker == base.speaker else 0.0
        result = DetectionResult(
            speaker=speaker,
            confidence=confidence,
            method=method,
            reasoning=reasoning,
            timestamp=timestamp,
            is_calibrated=is_calibrated,
            profile_similarities=dict(similarities),
            quality=DetectionQuality(
                profile_match_quality=profile_quality,
                base_agreement=agreement,
                overall_quality=confidence,
            ),
            base_result=base,
        )
        logger.debug(f"融合结果: {result}")
        return result
