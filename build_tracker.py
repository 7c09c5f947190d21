import json
import logging
import os
import hashlib
import threading
from typing import Dict, Optional
from datetime import datetime

from config import ImageBuildResult
from utils import digest_directory


class BuildTracker:
    """Build-result cache: plan key + context digest -> image produced for it"""

    def __init__(self, cache_file: str = ".build_cache.json"):
        self.cache_file = cache_file
        self._lock = threading.Lock()
        self.build_history = self._load_history()

    def _load_history(self) -> Dict:
        """Load build history from cache file"""
        if os.path.exists(self.cache_file):
            try:
                with open(self.cache_file, 'r') as f:
                    return json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                logging.warning(f"Ignoring unreadable build cache {self.cache_file}: {e}")
        return {"results": {}, "builds": []}

    def _save_history(self):
        """Save build history to cache file"""
        directory = os.path.dirname(os.path.abspath(self.cache_file))
        os.makedirs(directory, exist_ok=True)
        tmp = self.cache_file + ".tmp"
        with open(tmp, 'w') as f:
            json.dump(self.build_history, f, indent=2, sort_keys=True)
        os.replace(tmp, self.cache_file)

    @staticmethod
    def cache_key(plan_key: str, context_dir: str) -> str:
        """The plan does not see file contents, so the context digest is folded in"""
        content = json.dumps({'plan': plan_key, 'context': digest_directory(context_dir)}, sort_keys=True)
        return hashlib.sha256(content.encode('utf-8')).hexdigest()

    def lookup(self, key: str) -> Optional[ImageBuildResult]:
        with self._lock:
            entry = self.build_history.get("results", {}).get(key)
        if entry is None:
            return None
        try:
            return ImageBuildResult.from_dict(entry["result"])
        except (KeyError, ValueError) as e:
            logging.warning(f"Ignoring malformed build cache entry {key[:12]}: {e}")
            return None

    def record_build(self, key: str, project_id: str, result: ImageBuildResult):
        """Record a successful build"""
        with self._lock:
            self.build_history.setdefault("results", {})[key] = {
                "project": project_id,
                "result": result.to_dict(),
            }
            self.build_history.setdefault("builds", []).append({
                "timestamp": datetime.now().isoformat(),
                "project": project_id,
                "image_tag": result.tag,
                "image_id": result.image_id,
                "cache_key": key,
            })
            self._save_history()

    def forget(self, key: str):
        with self._lock:
            if self.build_history.get("results", {}).pop(key, None) is not None:
                self._save_history()

    def cleanup_old_builds(self, keep_last: int = 10):
        """Clean up old build records"""
        with self._lock:
            builds = self.build_history.get("builds", [])
            if len(builds) > keep_last:
                self.build_history["builds"] = builds[-keep_last:]
                self._save_history()
