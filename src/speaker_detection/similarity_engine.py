"""
声纹相似度引擎

计算两组声学特征的加权相似度，以及实时帧与各说话人档案的相似度
"""

import logging
from typing import Dict, Mapping, Optional
import numpy as np

from .models import SimilarityConfig, VoiceFeatures, VoiceProfile, Speaker

logger = logging.getLogger(__name__)


class SimilarityEngine:
    """
    声纹相似度引擎

    相似度 = 基频 × 0.25 + 频谱 × 0.35 + 倒谱 × 0.25 + 声纹 × 0.15（权重可配置），
    结果截断到 [0, 1]，且对两个参数对称。
    """

    def __init__(self, config: Optional[SimilarityConfig] = None):
        """
        初始化相似度引擎

        Args:
            config: 相似度配置对象
        """
        self.config = config or SimilarityConfig()
        self.config.validate()

        # 统计信息
        self.total_comparisons = 0

        logger.info(f"SimilarityEngine 初始化: weights=("
                    f"pitch={self.config.pitch_weight}, spectral={self.config.spectral_weight}, "
                    f"cepstral={self.config.cepstral_weight}, voiceprint={self.config.voiceprint_weight})")

    def pitch_similarity(self, a: VoiceFeatures, b: VoiceFeatures) -> float:
        diff = abs(a.pitch.fundamental - b.pitch.fundamental)
        return max(0.0, 1.0 - diff / self.config.pitch_scale_hz)

    def spectral_similarity(self, a: VoiceFeatures, b: VoiceFeatures) -> float:
        """质心 / 滚降 / 带宽三项归一化差值的均值"""
        cfg = self.config
        terms = [
            1.0 - abs(a.spectral.centroid - b.spectral.centroid) / cfg.centroid_scale_hz,
            1.0 - abs(a.spectral.rolloff - b.spectral.rolloff) / cfg.rolloff_scale_hz,
            1.0 - abs(a.spectral.bandwidth - b.spectral.bandwidth) / cfg.bandwidth_scale_hz,
        ]
        return max(0.0, float(np.mean(terms)))

    def cepstral_similarity(self, a: VoiceFeatures, b: VoiceFeatures) -> float:
        """倒谱欧氏距离转相似度，长度不一致时为 0"""
        ca = np.asarray(a.cepstral, dtype=np.float64)
        cb = np.asarray(b.cepstral, dtype=np.float64)
        if ca.shape != cb.shape or ca.size == 0:
            return 0.0
        distance = float(np.linalg.norm(ca - cb))
        return max(0.0, 1.0 - distance / self.config.cepstral_distance_scale)

    @staticmethod
    def voiceprint_similarity(a: VoiceFeatures, b: VoiceFeatures) -> float:
        """
        声纹余弦相似度

        长度不一致或任一向量为零向量时为 0。
        不做 [-1, 1] → [0, 1] 映射，负值由总分截断处理。
        """
        va = np.asarray(a.voiceprint, dtype=np.float64)
        vb = np.asarray(b.voiceprint, dtype=np.float64)
        if va.shape != vb.shape:
            return 0.0

        norm_a = np.linalg.norm(va)
        norm_b = np.linalg.norm(vb)
        if norm_a == 0 or norm_b == 0:
            return 0.0

        return float(np.dot(va, vb) / (norm_a * norm_b))

    def compute_similarity(self, a: VoiceFeatures, b: VoiceFeatures) -> float:
        """
        计算两组特征的相似度

        Args:
            a: 第一组特征
            b: 第二组特征

        Returns:
            相似度 [0, 1]
        """
        cfg = self.config
        score = (
            self.pitch_similarity(a, b) * cfg.pitch_weight
            + self.spectral_similarity(a, b) * cfg.spectral_weight
            + self.cepstral_similarity(a, b) * cfg.cepstral_weight
            + self.voiceprint_similarity(a, b) * cfg.voiceprint_weight
        )
        self.total_comparisons += 1
        return float(np.clip(score, 0.0, 1.0))

    def score_profiles(
        self,
        features: VoiceFeatures,
        profiles: Mapping[Speaker, VoiceProfile]
    ) -> Dict[Speaker, float]:
        """
        计算实时帧与各说话人档案的相似度

        Args:
            features: 实时帧特征
            profiles: 已注册档案 {speaker: profile}

        Returns:
            相似度字典 {speaker: similarity}，没有档案时为空
        """
        scores = {
            speaker: self.compute_similarity(features, profile.features)
            for speaker, profile in profiles.items()
        }
        if scores:
            logger.debug("档案相似度: " + ", ".join(
                f"{speaker.value}={score:.3f}" for speaker, score in scores.items()))
        return scores

    def reset_statistics(self):
        self.total_comparisons = 0
        logger.info("重置相似度统计信息")

    def get_statistics(self) -> dict:
        return {
            'total_comparisons': self.total_comparisons,
            'weights': {
                'pitch': self.config.pitch_weight,
                'spectral': self.config.spectral_weight,
                'cepstral': self.config.cepstral_weight,
                'voiceprint': self.config.voiceprint_weight,
            },
        }
