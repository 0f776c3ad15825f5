"""
双人声纹档案仓库

负责持久化校准生成的双人声纹档案
"""

import json
import logging
from pathlib import Path
from typing import Optional, List, Dict
import numpy as np

from .models import CoupleProfile, SPEAKERS

logger = logging.getLogger(__name__)


class ProfileRepository:
    """
    双人声纹档案仓库

    使用 JSON + NPZ 文件存储：JSON 保存元数据和标量特征，
    NPZ 保存两位说话人的倒谱、声纹和能量轮廓数组。
    """

    def __init__(self, profiles_dir: str = "data/couple_profiles/"):
        """
        初始化档案仓库

        Args:
            profiles_dir: 档案存储目录
        """
        self.profiles_dir = Path(profiles_dir)
        self.profiles_dir.mkdir(parents=True, exist_ok=True)

        # 缓存已加载的档案
        self._cache: Dict[str, CoupleProfile] = {}

        logger.info(f"ProfileRepository 初始化: dir={self.profiles_dir}")

    def _paths(self, couple_id: str):
        if not couple_id or Path(couple_id).name != couple_id or couple_id in ('.', '..'):
            raise ValueError(f"非法的档案ID: {couple_id!r}")
        return self.profiles_dir / f"{couple_id}.json", self.profiles_dir / f"{couple_id}.npz"

    def save(self, profile: CoupleProfile) -> bool:
        """
        保存双人声纹档案

        Args:
            profile: 双人声纹档案

        Returns:
            是否保存成功
        """
        metadata_path, arrays_path = self._paths(profile.couple_id)
        try:
            arrays = {}
            for speaker, voice_profile in profile.profiles().items():
                for name, value in voice_profile.features.arrays().items():
                    arrays[f"{speaker.value}_{name}"] = value

            # 保存特征数组（NPZ文件）
            with open(arrays_path, 'wb') as f:
                np.savez(f, **arrays)

            # 保存元数据（JSON文件）
            with open(metadata_path, 'w', encoding='utf-8') as f:
                json.dump(profile.to_dict(include_arrays=False), f, ensure_ascii=False, indent=2)

            self._cache[profile.couple_id] = profile

            logger.info(f"保存声纹档案成功: couple_id={profile.couple_id}, name={profile.name}")
            return True

        except Exception as e:
            logger.error(f"保存声纹档案失败: couple_id={profile.couple_id}, error={e}",
                         exc_info=True)
            return False

    def load(self, couple_id: str) -> Optional[CoupleProfile]:
        """
        加载双人声纹档案

        Args:
            couple_id: 档案ID

        Returns:
            CoupleProfile 对象，如果不存在或损坏返回 None
        """
        if couple_id in self._cache:
            return self._cache[couple_id]

        metadata_path, arrays_path = self._paths(couple_id)
        if not metadata_path.exists() or not arrays_path.exists():
            logger.warning(f"声纹档案不存在: couple_id={couple_id}")
            return None

        try:
            with open(metadata_path, 'r', encoding='utf-8') as f:
                metadata = json.load(f)

            with np.load(arrays_path) as data:
                arrays = {
                    speaker: {
                        name: np.asarray(data[f"{speaker.value}_{name}"], dtype=np.float64)
                        for name in ('cepstral', 'voiceprint', 'energy_contour')
                    }
                    for speaker in SPEAKERS
                }

            profile = CoupleProfile.from_dict(metadata, arrays)
            self._cache[couple_id] = profile

            logger.debug(f"加载声纹档案成功: couple_id={couple_id}")
            return profile

        except Exception as e:
            logger.error(f"加载声纹档案失败: couple_id={couple_id}, error={e}",
                         exc_info=True)
            return None

    def delete(self, couple_id: str) -> bool:
        """
        删除双人声纹档案

        Returns:
            是否删除成功（档案不存在也返回 True）
        """
        metadata_path, arrays_path = self._paths(couple_id)
        try:
            if metadata_path.exists():
                metadata_path.unlink()
            if arrays_path.exists():
                arrays_path.unlink()

            self._cache.pop(couple_id, None)

            logger.info(f"删除声纹档案成功: couple_id={couple_id}")
            return True

        except OSError as e:
            logger.error(f"删除声纹档案失败: couple_id={couple_id}, error={e}",
                         exc_info=True)
            return False

    def list_profiles(self) -> List[str]:
        """列出所有档案ID"""
        return sorted(path.stem for path in self.profiles_dir.glob("*.json"))

    def load_latest(self) -> Optional[CoupleProfile]:
        """加载最近一次校准的档案"""
        profiles = [p for p in (self.load(cid) for cid in self.list_profiles()) if p is not None]
        if not profiles:
            return None
        return max(profiles, key=lambda p: p.last_calibrated)

    def clear_cache(self):
        self._cache.clear()
        logger.debug("清空声纹档案缓存")

    def get_statistics(self) -> dict:
        couple_ids = self.list_profiles()
        total_size = 0
        for couple_id in couple_ids:
            for path in self._paths(couple_id):
                if path.exists():
                    total_size += path.stat().st_size

        return {
            'total_profiles': len(couple_ids),
            'cache_size': len(self._cache),
            'total_disk_size_bytes': total_size,
            'profiles_dir': str(self.profiles_dir),
        }
