"""
校准会话模块单元测试
"""

import threading
import unittest
import numpy as np
import logging
from pathlib import Path
import sys

# 添加 src 目录到 Python 路径
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from speaker_detection.calibration import AudioQualityAnalyzer, CalibrationManager
from speaker_detection.exceptions import (
    UnknownSessionError, DuplicateSessionError, SessionClosedError, InvalidAudioError,
)
from speaker_detection.feature_extractor import FeatureExtractor
from speaker_detection.models import (
    CalibrationConfig, EnrollmentTier, SampleType, Speaker,
)
from speaker_detection.profile_store import ProfileStore

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

SR = 16000


def voice_sample(freq, duration_s=3.5, amp=0.5, noise=0.01, seed=0):
    """带少量噪声的正弦波，模拟一段校准录音"""
    rng = np.random.default_rng(seed)
    t = np.arange(int(duration_s * SR)) / SR
    audio = amp * np.sin(2 * np.pi * freq * t) + rng.normal(0, noise, t.size)
    return np.clip(audio, -1, 1).astype(np.float32)


class TestAudioQualityAnalyzer(unittest.TestCase):
    """测试 AudioQualityAnalyzer 类"""

    def setUp(self):
        self.analyzer = AudioQualityAnalyzer(CalibrationConfig())

    def test_clean_sample_accepted(self):
        quality = self.analyzer.analyze(voice_sample(180.0), SR)

        self.assertGreaterEqual(quality.snr_db, 10.0)
        self.assertLessEqual(quality.snr_db, 40.0)
        self.assertEqual(quality.clarity_score, 1.0)
        self.assertAlmostEqual(quality.duration_ms, 3500.0)
        self.assertTrue(quality.is_quality_sufficient)
        self.assertTrue(self.analyzer.is_acceptable(quality))

    def test_short_sample_rejected(self):
        quality = self.analyzer.analyze(voice_sample(180.0, duration_s=1.0), SR)

        self.assertTrue(quality.is_quality_sufficient)
        self.assertFalse(self.analyzer.is_acceptable(quality))
        self.assertIn("太短", self.analyzer.recommendation(quality))

    def test_silence_rejected(self):
        quality = self.analyzer.analyze(np.zeros(SR * 4, dtype=np.float32), SR)

        self.assertEqual(quality.rms, 0.0)
        self.assertEqual(quality.snr_db, -20.0)
        self.assertEqual(quality.clarity_score, 0.0)
        self.assertFalse(self.analyzer.is_acceptable(quality))

    def test_empty_audio(self):
        quality = self.analyzer.analyze(np.zeros(0, dtype=np.float32), SR)
        self.assertFalse(quality.is_quality_sufficient)
        self.assertEqual(quality.duration_ms, 0.0)

    def test_clarity_formula(self):
        # rms=0.01，peak=0.01 → clarity = min(1, 0.1 + 0)
        audio = np.full(SR * 4, 0.01, dtype=np.float32)
        audio[::2] = -0.01
        quality = self.analyzer.analyze(audio, SR)
        self.assertAlmostEqual(quality.clarity_score, 0.1, places=5)


class TestCalibrationManager(unittest.TestCase):
    """测试 CalibrationManager 类"""

    @classmethod
    def setUpClass(cls):
        cls.extractor = FeatureExtractor()
        cls.sample_a = voice_sample(140.0, seed=1)
        cls.sample_b = voice_sample(240.0, seed=2)

    def setUp(self):
        self.store = ProfileStore()
        self.manager = CalibrationManager(self.extractor, self.store, CalibrationConfig())

    def record(self, session_id, speaker, audio):
        return self.manager.record_sample(session_id, speaker, SampleType.NEUTRAL, audio, SR)

    def test_start_and_duplicate(self):
        session_id = self.manager.start("s1")
        self.assertEqual(session_id, "s1")
        self.assertTrue(self.manager.has_session("s1"))

        with self.assertRaises(DuplicateSessionError):
            self.manager.start("s1")

    def test_generated_session_id(self):
        session_id = self.manager.start()
        self.assertTrue(session_id.startswith("calibration_"))

    def test_progress_quick_tier(self):
        session_id = self.manager.start("s1", EnrollmentTier.QUICK)
        result = self.record(session_id, Speaker.A, self.sample_a)

        self.assertTrue(result.success)
        self.assertIsNotNone(result.sample)
        progress = result.progress
        self.assertEqual(progress.per_speaker[Speaker.A].samples_collected, 1)
        self.assertEqual(progress.per_speaker[Speaker.A].samples_needed, 3)
        self.assertAlmostEqual(progress.per_speaker[Speaker.A].progress, 1 / 3)
        self.assertAlmostEqual(progress.overall_progress, 1 / 6)
        self.assertFalse(progress.is_complete)

    def test_progress_capped(self):
        session_id = self.manager.start("s1")
        for _ in range(4):
            result = self.record(session_id, Speaker.A, self.sample_a)
        self.assertEqual(result.progress.per_speaker[Speaker.A].progress, 1.0)
        self.assertTrue(result.progress.per_speaker[Speaker.A].is_complete)

    def test_extended_tier_target(self):
        session_id = self.manager.start("s1", EnrollmentTier.EXTENDED)
        progress = self.manager.get_progress(session_id)
        self.assertEqual(progress.per_speaker[Speaker.B].samples_needed, 8)

    def test_rejected_sample_leaves_progress_unchanged(self):
        session_id = self.manager.start("s1")
        self.record(session_id, Speaker.A, self.sample_a)

        result = self.record(session_id, Speaker.A, voice_sample(140.0, duration_s=1.0))
        self.assertFalse(result.success)
        self.assertIsNone(result.sample)
        self.assertEqual(result.reason, "quality_insufficient")
        self.assertTrue(result.recommendation)
        self.assertEqual(result.progress.per_speaker[Speaker.A].samples_collected, 1)

    def test_invalid_audio_raises(self):
        session_id = self.manager.start("s1")
        with self.assertRaises(InvalidAudioError):
            self.record(session_id, Speaker.A, np.zeros((2, SR * 4), dtype=np.float32))
        # 异常后会话仍可用
        self.assertTrue(self.record(session_id, Speaker.A, self.sample_a).success)

    def test_unknown_session(self):
        with self.assertRaises(UnknownSessionError):
            self.record("missing", Speaker.A, self.sample_a)
        with self.assertRaises(UnknownSessionError):
            self.manager.complete("missing")
        with self.assertRaises(KeyError):
            self.manager.abandon("missing")

    def test_complete_with_only_speaker_a_fails(self):
        session_id = self.manager.start("s1")
        for _ in range(3):
            self.record(session_id, Speaker.A, self.sample_a)

        result = self.manager.complete(session_id)

        self.assertFalse(result.success)
        self.assertTrue(result.results[Speaker.A].success)
        self.assertFalse(result.results[Speaker.B].success)
        self.assertIsNone(result.couple_profile)
        self.assertEqual(result.recommendation, 'consider_recalibration')
        self.assertFalse(self.store.has_profiles())
        self.assertFalse(self.manager.has_session(session_id))

    def test_complete_success_replaces_store(self):
        session_id = self.manager.start("s1")
        self.record(session_id, Speaker.A, self.sample_a)
        self.record(session_id, Speaker.B, self.sample_b)

        result = self.manager.complete(session_id, profile_name="测试档案")

        self.assertTrue(result.success)
        self.assertEqual(result.recommendation, 'ready_for_conversation')
        self.assertTrue(self.store.is_calibrated())
        couple = result.couple_profile
        self.assertEqual(couple.name, "测试档案")
        self.assertIs(couple.profile_a, self.store.get(Speaker.A))
        self.assertAlmostEqual(couple.accuracy, (result.results[Speaker.A].avg_quality
                                                 + result.results[Speaker.B].avg_quality) / 2)
        self.assertFalse(self.manager.has_session(session_id))

        with self.assertRaises(UnknownSessionError):
            self.manager.complete(session_id)

    def test_abandon_has_no_side_effects(self):
        session_id = self.manager.start("s1")
        self.record(session_id, Speaker.A, self.sample_a)
        self.record(session_id, Speaker.B, self.sample_b)

        self.manager.abandon(session_id)

        self.assertFalse(self.store.has_profiles())
        with self.assertRaises(UnknownSessionError):
            self.record(session_id, Speaker.A, self.sample_a)

    def test_closed_session_rejects_samples(self):
        session_id = self.manager.start("s1")
        self.manager._sessions[session_id].closed = True
        with self.assertRaises(SessionClosedError):
            self.record(session_id, Speaker.A, self.sample_a)

    def test_concurrent_recording(self):
        """两位说话人并发录入样本"""
        session_id = self.manager.start("s1")
        errors = []

        def worker(speaker, audio):
            try:
                for _ in range(3):
                    self.record(session_id, speaker, audio)
            except Exception as e:  # 汇总到主线程断言
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(Speaker.A, self.sample_a)),
                   threading.Thread(target=worker, args=(Speaker.B, self.sample_b))]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        progress = self.manager.get_progress(session_id)
        self.assertTrue(progress.is_complete)

        result = self.manager.complete(session_id)
        self.assertTrue(result.success)
        self.assertEqual(result.results[Speaker.A].sample_count, 3)
        self.assertEqual(result.results[Speaker.B].sample_count, 3)

    def test_session_metrics(self):
        session_id = self.manager.start("s1")
        self.record(session_id, Speaker.A, self.sample_a)
        self.record(session_id, Speaker.B, self.sample_b)

        metrics = self.manager.get_session_metrics(session_id)
        self.assertAlmostEqual(metrics.total_duration_ms, 7000.0)
        self.assertEqual(metrics.avg_clarity, 1.0)
        self.assertGreaterEqual(metrics.avg_snr_db, 10.0)
        self.assertAlmostEqual(metrics.completion_rate, 1 / 3)


class TestProfileBuilding(unittest.TestCase):
    """测试档案聚合"""

    @classmethod
    def setUpClass(cls):
        cls.extractor = FeatureExtractor()
        cls.manager = CalibrationManager(cls.extractor, ProfileStore())

    def _samples(self, freqs):
        session_id = self.manager.start()
        samples = [self.manager.record_sample(session_id, Speaker.A, SampleType.STATEMENT,
                                              voice_sample(f, seed=i), SR).sample
                   for i, f in enumerate(freqs)]
        self.manager.abandon(session_id)
        return samples

    def test_profile_aggregates_samples(self):
        samples = self._samples([120.0, 180.0])
        profile = self.manager.build_profile(Speaker.A, samples, EnrollmentTier.QUICK, now=1000.0)

        pitches = [s.features.pitch.fundamental for s in samples]
        self.assertAlmostEqual(profile.features.pitch.fundamental, np.mean(pitches))
        self.assertEqual(profile.features.pitch.range, (min(pitches), max(pitches)))
        self.assertAlmostEqual(profile.features.pitch.variance, np.var(pitches))
        np.testing.assert_allclose(
            profile.features.voiceprint,
            np.mean([s.features.voiceprint for s in samples], axis=0),
        )
        self.assertEqual(profile.features.temporal.energy_contour.size, 0)
        self.assertEqual(profile.sample_count, 2)
        self.assertEqual(profile.created_at, 1000.0)
        self.assertAlmostEqual(profile.quality, 1.0)

    def test_consistency(self):
        samples = self._samples([150.0])
        self.assertEqual(CalibrationManager.compute_consistency([samples[0].features]), 1.0)

        samples = self._samples([100.0, 200.0])
        features = [s.features for s in samples]
        pitch_sim = 1 - abs(features[0].pitch.fundamental - features[1].pitch.fundamental) / 200
        centroid_sim = 1 - abs(features[0].spectral.centroid - features[1].spectral.centroid) / 1000
        expected = min(1.0, max(0.0, (pitch_sim + centroid_sim) / 2))
        self.assertAlmostEqual(CalibrationManager.compute_consistency(features), expected)

    def test_build_profile_requires_samples(self):
        with self.assertRaises(ValueError):
            self.manager.build_profile(Speaker.A, [])


if __name__ == '__main__':
    unittest.main()
