import os
from typing import Optional


STORAGE_ROOT = os.environ.get("TRYON_STORAGE", "storage")
RESULTS_DIR = os.path.join(STORAGE_ROOT, "results")

RESULT_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
}


def result_filename(job_id: str, provider: str, mime_type: Optional[str]) -> str:
    ext = RESULT_EXTENSIONS.get((mime_type or "").lower(), ".png")
    name = f"{job_id}_{provider}{ext}"
    return name.replace("/", "_").replace("\\", "_")


class Storage:
    @staticmethod
    def ensure_dirs() -> None:
        os.makedirs(RESULTS_DIR, exist_ok=True)

    @staticmethod
    def save_result_bytes(data: bytes, filename: str) -> str:
        Storage.ensure_dirs()
        path = os.path.join(RESULTS_DIR, filename)
        with open(path, "wb") as f:
            f.write(data)
        return path

    @staticmethod
    def save_generated(job_id: str, provider: str, data: bytes, mime_type: Optional[str]) -> str:
        """Write a provider's image bytes under the results dir, one file per job and provider."""
        return Storage.save_result_bytes(data, result_filename(job_id, provider, mime_type))

    @staticmethod
    def remove_result(path: Optional[str]) -> bool:
        if not path or not os.path.isfile(path):
            return False
        if os.path.commonpath([os.path.abspath(path), os.path.abspath(RESULTS_DIR)]) != os.path.abspath(RESULTS_DIR):
            return False
        os.remove(path)
        return True
