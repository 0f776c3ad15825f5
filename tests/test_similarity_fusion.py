"""
相似度引擎与融合策略单元测试
"""

import unittest
import numpy as np
import logging
from pathlib import Path
import sys

# 添加 src 目录到 Python 路径
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from speaker_detection.fusion_policy import FusionPolicy
from speaker_detection.models import (
    VoiceFeatures, PitchFeatures, SpectralFeatures, TemporalFeatures,
    SimilarityConfig, FusionConfig, SpeakerDecision, Speaker, BaseMethod, DetectionMethod,
)
from speaker_detection.similarity_engine import SimilarityEngine

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def make_features(pitch=150.0, centroid=800.0, cepstral=None, voiceprint=None, seed=0):
    rng = np.random.default_rng(seed)
    if cepstral is None:
        cepstral = rng.normal(size=13)
        cepstral /= np.linalg.norm(cepstral)
    if voiceprint is None:
        voiceprint = rng.normal(size=256)
    return VoiceFeatures(
        pitch=PitchFeatures(fundamental=pitch, range=(pitch * 0.8, pitch * 1.2)),
        spectral=SpectralFeatures(centroid=centroid, rolloff=centroid * 1.5, flux=0.1,
                                  flatness=0.3, bandwidth=centroid * 0.3),
        cepstral=np.asarray(cepstral, dtype=np.float64),
        temporal=TemporalFeatures(zero_crossing_rate=0.05, energy_contour=np.zeros(0)),
        voiceprint=np.asarray(voiceprint, dtype=np.float64),
    )


def base_decision(speaker=Speaker.A, confidence=0.9, method=BaseMethod.TURN_CONTINUE):
    return SpeakerDecision(speaker=speaker, confidence=confidence, method=method,
                           reasoning="test", timestamp=1.0)


class TestSimilarityEngine(unittest.TestCase):
    """测试 SimilarityEngine 类"""

    def setUp(self):
        self.engine = SimilarityEngine()

    def test_identical_features(self):
        features = make_features()
        self.assertAlmostEqual(self.engine.compute_similarity(features, features), 1.0, places=6)

    def test_symmetry_and_bounds(self):
        """相似度对称且在 [0, 1]"""
        for seed in range(10):
            a = make_features(pitch=80 + seed * 30, centroid=300 + seed * 150, seed=seed)
            b = make_features(pitch=400 - seed * 25, centroid=1500 - seed * 90, seed=seed + 100)
            ab = self.engine.compute_similarity(a, b)
            ba = self.engine.compute_similarity(b, a)
            self.assertAlmostEqual(ab, ba, places=12)
            self.assertGreaterEqual(ab, 0.0)
            self.assertLessEqual(ab, 1.0)

    def test_pitch_term(self):
        a = make_features(pitch=100.0)
        b = make_features(pitch=200.0)
        self.assertAlmostEqual(self.engine.pitch_similarity(a, b), 0.5)
        self.assertEqual(self.engine.pitch_similarity(a, make_features(pitch=400.0)), 0.0)

    def test_spectral_term(self):
        a = make_features(centroid=1000.0)
        b = make_features(centroid=1100.0)
        # 质心 1-100/1000，滚降 1-150/2000，带宽 1-30/500
        expected = np.mean([0.9, 1 - 150 / 2000, 1 - 30 / 500])
        self.assertAlmostEqual(self.engine.spectral_similarity(a, b), expected)

    def test_cepstral_length_mismatch(self):
        a = make_features(cepstral=np.ones(13) / np.sqrt(13))
        b = make_features(cepstral=np.ones(12) / np.sqrt(12))
        self.assertEqual(self.engine.cepstral_similarity(a, b), 0.0)

    def test_opposite_cepstra(self):
        c = np.zeros(13)
        c[0] = 1.0
        self.assertEqual(self.engine.cepstral_similarity(make_features(cepstral=c),
                                                         make_features(cepstral=-c)), 0.0)

    def test_voiceprint_zero_or_mismatch(self):
        a = make_features(voiceprint=np.zeros(256))
        b = make_features()
        self.assertEqual(self.engine.voiceprint_similarity(a, b), 0.0)
        c = make_features(voiceprint=np.ones(128))
        self.assertEqual(self.engine.voiceprint_similarity(b, c), 0.0)

    def test_score_profiles_empty(self):
        self.assertEqual(self.engine.score_profiles(make_features(), {}), {})

    def test_invalid_weights(self):
        with self.assertRaises(ValueError):
            SimilarityEngine(SimilarityConfig(pitch_weight=0.5))


class TestFusionPolicy(unittest.TestCase):
    """测试 FusionPolicy 类"""

    def setUp(self):
        self.policy = FusionPolicy()

    def test_uncalibrated_keeps_base(self):
        base = base_decision(Speaker.B, 0.7, BaseMethod.TURN_SWITCH)
        result = self.policy.fuse({}, base)

        self.assertEqual(result.method, DetectionMethod.UNCALIBRATED_TURN_SWITCH)
        self.assertEqual(result.method.value, "uncalibrated_turn_switch")
        self.assertEqual(result.speaker, Speaker.B)
        self.assertAlmostEqual(result.confidence, 0.7)
        self.assertFalse(result.is_calibrated)
        self.assertEqual(result.quality.base_agreement, 1.0)
        self.assertIs(result.base_result, base)

    def test_no_speaker_has_no_agreement(self):
        """融合结果与基础判定都没有说话人时一致度为 0"""
        result = self.policy.fuse({}, base_decision(None, 0.5))
        self.assertIsNone(result.speaker)
        self.assertEqual(result.quality.base_agreement, 0.0)

        result = self.policy.fuse({Speaker.A: 0.3, Speaker.B: 0.2}, base_decision(None, 0.5))
        self.assertEqual(result.method, DetectionMethod.HYBRID_FALLBACK)
        self.assertEqual(result.quality.base_agreement, 0.0)

    def test_profile_match(self):
        result = self.policy.fuse({Speaker.A: 0.2, Speaker.B: 0.82}, base_decision(Speaker.A))

        self.assertEqual(result.method, DetectionMethod.CALIBRATED_PROFILE_MATCH)
        self.assertEqual(result.speaker, Speaker.B)
        self.assertAlmostEqual(result.confidence, 0.97)
        self.assertEqual(result.quality.base_agreement, 0.0)
        self.assertAlmostEqual(result.quality.profile_match_quality, 0.82)
        self.assertTrue(result.is_calibrated)

    def test_profile_match_confidence_clamped(self):
        result = self.policy.fuse({Speaker.A: 1.0, Speaker.B: 0.1}, base_decision())
        self.assertEqual(result.confidence, 1.0)
        self.assertEqual(result.quality.overall_quality, 1.0)

    def test_verified(self):
        result = self.policy.fuse({Speaker.A: 0.5, Speaker.B: 0.78}, base_decision(Speaker.B, 0.9))

        self.assertEqual(result.method, DetectionMethod.HYBRID_CALIBRATED_VERIFIED)
        self.assertEqual(result.speaker, Speaker.B)
        self.assertAlmostEqual(result.confidence, 0.975)
        self.assertEqual(result.quality.base_agreement, 1.0)

    def test_conflict(self):
        result = self.policy.fuse({Speaker.A: 0.79, Speaker.B: 0.3}, base_decision(Speaker.B, 0.9))

        self.assertEqual(result.method, DetectionMethod.HYBRID_CALIBRATION_CONFLICT)
        self.assertEqual(result.speaker, Speaker.B)
        self.assertAlmostEqual(result.confidence, 0.72)

    def test_calibrated_fallback(self):
        result = self.policy.fuse({Speaker.A: 0.78, Speaker.B: 0.2}, base_decision(Speaker.B, 0.5))

        self.assertEqual(result.method, DetectionMethod.CALIBRATED_FALLBACK)
        self.assertEqual(result.speaker, Speaker.A)
        self.assertAlmostEqual(result.confidence, 0.78)
        self.assertEqual(result.quality.base_agreement, 0.0)

    def test_hybrid_fallback(self):
        result = self.policy.fuse({Speaker.A: 0.3, Speaker.B: 0.2}, base_decision(Speaker.B, 0.5))

        self.assertEqual(result.method, DetectionMethod.HYBRID_FALLBACK)
        self.assertEqual(result.speaker, Speaker.B)
        self.assertAlmostEqual(result.confidence, 0.5)
        self.assertTrue(result.is_calibrated)

    def test_single_profile_uses_calibrated_path(self):
        result = self.policy.fuse({Speaker.A: 0.9}, base_decision(Speaker.B, 0.4))
        self.assertEqual(result.method, DetectionMethod.CALIBRATED_PROFILE_MATCH)
        self.assertEqual(result.speaker, Speaker.A)

    def test_confidence_always_bounded(self):
        """任意分支的置信度都在 [0, 1]"""
        rng = np.random.default_rng(3)
        for _ in range(200):
            similarities = {Speaker.A: float(rng.uniform()), Speaker.B: float(rng.uniform())}
            if rng.uniform() < 0.2:
                similarities = {}
            speaker = [Speaker.A, Speaker.B, None][int(rng.integers(3))]
            base = base_decision(speaker, float(rng.uniform()))
            result = self.policy.fuse(similarities, base)
            self.assertGreaterEqual(result.confidence, 0.0)
            self.assertLessEqual(result.confidence, 1.0)
            self.assertIsInstance(result.method, DetectionMethod)

    def test_custom_thresholds(self):
        policy = FusionPolicy(FusionConfig(profile_match_threshold=0.95))
        result = policy.fuse({Speaker.A: 0.9, Speaker.B: 0.1}, base_decision(Speaker.A, 0.4))
        self.assertEqual(result.method, DetectionMethod.CALIBRATED_FALLBACK)

    def test_invalid_config(self):
        with self.assertRaises(ValueError):
            FusionPolicy(FusionConfig(conflict_penalty=1.5))


if __name__ == '__main__':
    unittest.main()
