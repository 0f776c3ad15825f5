"""
声纹档案存储与持久化单元测试
"""

import tempfile
import time
import unittest
import numpy as np
import logging
from pathlib import Path
import sys

# 添加 src 目录到 Python 路径
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from speaker_detection.models import (
    VoiceFeatures, VoiceProfile, CoupleProfile, PitchFeatures, SpectralFeatures,
    TemporalFeatures, Speaker, EnrollmentTier,
)
from speaker_detection.profile_repository import ProfileRepository
from speaker_detection.profile_store import ProfileStore, SECONDS_PER_DAY

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def make_features(pitch, seed=0):
    rng = np.random.default_rng(seed)
    cepstral = rng.normal(size=13)
    return VoiceFeatures(
        pitch=PitchFeatures(fundamental=pitch, range=(pitch - 20, pitch + 25), variance=12.5),
        spectral=SpectralFeatures(centroid=750.0, rolloff=1125.0, flux=0.02,
                                  flatness=0.4, bandwidth=225.0),
        cepstral=cepstral / np.linalg.norm(cepstral),
        temporal=TemporalFeatures(zero_crossing_rate=0.031, energy_contour=rng.uniform(size=4)),
        voiceprint=rng.normal(size=256),
    )


def make_profile(speaker, pitch=150.0, quality=0.8, created_at=None, seed=0):
    created_at = time.time() if created_at is None else created_at
    return VoiceProfile(
        speaker=speaker,
        features=make_features(pitch, seed),
        quality=quality,
        tier=EnrollmentTier.EXTENDED,
        sample_count=8,
        total_duration_ms=28000.0,
        consistency=0.9,
        created_at=created_at,
        last_used=created_at,
    )


def make_couple(couple_id="couple_001", last_calibrated=1700000000.0):
    return CoupleProfile(
        couple_id=couple_id,
        name="小明和小红",
        profile_a=make_profile(Speaker.A, 120.0, 0.8, seed=1),
        profile_b=make_profile(Speaker.B, 220.0, 0.75, seed=2),
        accuracy=0.775,
        last_calibrated=last_calibrated,
    )


class TestModels(unittest.TestCase):
    """测试数据模型序列化"""

    def test_voice_profile_dict_roundtrip(self):
        profile = make_profile(Speaker.B, seed=5)
        restored = VoiceProfile.from_dict(profile.to_dict())

        self.assertEqual(restored.to_dict(), profile.to_dict())
        self.assertEqual(restored.speaker, Speaker.B)
        self.assertEqual(restored.tier, EnrollmentTier.EXTENDED)
        np.testing.assert_array_equal(restored.features.voiceprint, profile.features.voiceprint)

    def test_touch_returns_copy(self):
        profile = make_profile(Speaker.A, created_at=100.0)
        touched = profile.touch(now=200.0)
        self.assertEqual(profile.last_used, 100.0)
        self.assertEqual(touched.last_used, 200.0)
        self.assertIs(touched.features, profile.features)


class TestProfileStore(unittest.TestCase):
    """测试 ProfileStore 类"""

    def setUp(self):
        self.store = ProfileStore(max_age_days=7.0, min_quality=0.15)

    def test_empty_store(self):
        self.assertFalse(self.store.has_profiles())
        self.assertFalse(self.store.is_calibrated())
        self.assertTrue(self.store.needs_recalibration())
        self.assertEqual(self.store.average_quality(), 0.0)

    def test_replace_all(self):
        self.store.replace_all({Speaker.A: make_profile(Speaker.A, quality=0.8),
                                Speaker.B: make_profile(Speaker.B, quality=0.6)},
                               calibrated_at=123.0)
        self.assertTrue(self.store.is_calibrated())
        self.assertFalse(self.store.needs_recalibration())
        self.assertAlmostEqual(self.store.average_quality(), 0.7)
        self.assertEqual(self.store.last_calibration_time, 123.0)

    def test_single_profile_needs_recalibration(self):
        self.store.replace_all({Speaker.A: make_profile(Speaker.A)})
        self.assertTrue(self.store.has_profiles())
        self.assertFalse(self.store.is_calibrated())
        self.assertTrue(self.store.needs_recalibration())

    def test_expired_profile(self):
        old = time.time() - 8 * SECONDS_PER_DAY
        self.store.replace_all({Speaker.A: make_profile(Speaker.A, created_at=old),
                                Speaker.B: make_profile(Speaker.B)})
        self.assertTrue(self.store.needs_recalibration())

    def test_low_quality_profile(self):
        self.store.replace_all({Speaker.A: make_profile(Speaker.A, quality=0.1),
                                Speaker.B: make_profile(Speaker.B)})
        self.assertTrue(self.store.needs_recalibration())

    def test_speaker_mismatch_rejected(self):
        with self.assertRaises(ValueError):
            self.store.replace_all({Speaker.A: make_profile(Speaker.B)})

    def test_mark_used(self):
        self.store.replace_all({Speaker.A: make_profile(Speaker.A, created_at=100.0)})
        self.store.mark_used(Speaker.A, now=500.0)
        self.assertEqual(self.store.get(Speaker.A).last_used, 500.0)
        self.store.mark_used(Speaker.B)  # 没有档案时忽略

    def test_clear(self):
        self.store.replace_all({Speaker.A: make_profile(Speaker.A)})
        self.store.clear()
        self.assertFalse(self.store.has_profiles())
        self.assertEqual(self.store.last_calibration_time, 0.0)


class TestProfileRepository(unittest.TestCase):
    """测试 ProfileRepository 类"""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.repository = ProfileRepository(profiles_dir=self.temp_dir.name)

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_save_and_load(self):
        couple = make_couple()
        self.assertTrue(self.repository.save(couple))

        # 新实例，不经过缓存
        loaded = ProfileRepository(profiles_dir=self.temp_dir.name).load(couple.couple_id)

        self.assertIsNotNone(loaded)
        self.assertEqual(loaded.to_dict(), couple.to_dict())
        self.assertEqual(loaded.name, "小明和小红")
        np.testing.assert_array_equal(loaded.profile_b.features.cepstral,
                                      couple.profile_b.features.cepstral)
        np.testing.assert_array_equal(loaded.profile_a.features.temporal.energy_contour,
                                      couple.profile_a.features.temporal.energy_contour)

    def test_files_written(self):
        self.repository.save(make_couple())
        self.assertTrue((Path(self.temp_dir.name) / "couple_001.json").exists())
        self.assertTrue((Path(self.temp_dir.name) / "couple_001.npz").exists())

    def test_missing_profile(self):
        self.assertIsNone(self.repository.load("missing"))

    def test_list_delete_latest(self):
        self.repository.save(make_couple("c1", last_calibrated=100.0))
        self.repository.save(make_couple("c2", last_calibrated=200.0))

        self.assertEqual(self.repository.list_profiles(), ["c1", "c2"])
        self.assertEqual(self.repository.load_latest().couple_id, "c2")

        self.assertTrue(self.repository.delete("c2"))
        self.assertEqual(self.repository.list_profiles(), ["c1"])
        self.assertIsNone(self.repository.load("c2"))

    def test_invalid_id(self):
        with self.assertRaises(ValueError):
            self.repository.load("../escape")

    def test_clear_cache_reloads_from_disk(self):
        couple = make_couple()
        self.repository.save(couple)
        self.assertIs(self.repository.load(couple.couple_id), couple)

        self.repository.clear_cache()
        self.assertEqual(self.repository.get_statistics()['cache_size'], 0)

        reloaded = self.repository.load(couple.couple_id)
        self.assertIsNot(reloaded, couple)
        self.assertEqual(reloaded.to_dict(), couple.to_dict())

    def test_statistics(self):
        self.repository.save(make_couple())
        stats = self.repository.get_statistics()
        self.assertEqual(stats['total_profiles'], 1)
        self.assertGreater(stats['total_disk_size_bytes'], 0)


if __name__ == '__main__':
    unittest.main()
