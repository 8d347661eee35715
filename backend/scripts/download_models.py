"""
PieceLocator - Model Download Script
Pre-fetches the DINOv2 checkpoint named by FEATURE_MODEL_NAME into
storage/models/ so the first match does not wait on the download.
Run once before first launch: python scripts/download_models.py
"""

import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BACKEND_DIR))

from app.config import get_settings  # noqa: E402
from app.core.errors import ExtractionError  # noqa: E402
from app.modules.feature_extraction.dino_extractor import DinoFeatureExtractor  # noqa: E402


def main() -> None:
    settings = get_settings()
    cache_dir = settings.feature_cache_dir
    cache_dir.mkdir(parents=True, exist_ok=True)

    print("\nPieceLocator - Model Download\n" + "-" * 40)
    print(f"Model:     {settings.feature_model_name}")
    print(f"Cache dir: {cache_dir}\n")

    extractor = DinoFeatureExtractor(settings.feature_model_name, cache_dir=cache_dir)
    try:
        extractor.load()
    except ExtractionError as e:
        print(f"  x {e}")
        sys.exit(1)

    print(f"  ok {settings.feature_model_name} cached on {extractor.device}")
    print("-" * 40 + "\nModel ready. You can now start PieceLocator.\n")


if __name__ == "__main__":
    main()
