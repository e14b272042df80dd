import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from cityindex.api.dependencies import reset_dependencies  # noqa: E402
from cityindex.config.settings import reset_settings  # noqa: E402
from cityindex.models.common import NormalizedRecord  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    reset_dependencies()
    yield
    reset_settings()
    reset_dependencies()


def make_city(index: int) -> dict:
    return {
        "Codgeo": f"{index:05d}",
        "Nom Com": f"Ville {index}",
        "Nom Dept": "Gironde",
        "Nom Reg": "Nouvelle-Aquitaine",
        "Geo Point": [44.83, -0.57],
        "Population": index,
    }


def make_records(count: int, *, start_id: int = 1) -> tuple:
    return tuple(
        NormalizedRecord(id=start_id + offset, fields={"codgeo": f"{offset:05d}", "nom_com": f"Ville {offset}"})
        for offset in range(count)
    )


@pytest.fixture
def city_payload():
    def _build(count: int) -> bytes:
        return json.dumps([make_city(index) for index in range(count)]).encode("utf-8")

    return _build
