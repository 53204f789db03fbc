from __future__ import annotations

from pathlib import Path

DIST_NAME = "weather-gateway"


def get_version() -> str:
    """Best-effort version resolution.

    Order:
      1) Installed package metadata (when installed as a package)
      2) pyproject.toml (repo / container build context)
      3) fallback
    """

    try:
        from importlib.metadata import version as _version

        return _version(DIST_NAME)
    except Exception:
        pass

    try:
        import tomllib  # py3.11+

        root = Path(__file__).resolve().parents[1]
        data = tomllib.loads((root / "pyproject.toml").read_text(encoding="utf-8"))
        v = data.get("project", {}).get("version")
        if isinstance(v, str) and v.strip():
            return v.strip()
    except Exception:
        pass

    return "0.0.0"
