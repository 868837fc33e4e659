from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent
CATALOG_DIR = BASE_DIR / "conductor" / "scenarios" / "catalog"
RESULTS_DIR = Path.cwd() / "results"
LOGS_DIR = Path.cwd() / "logs"
