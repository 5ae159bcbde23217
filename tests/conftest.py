import sys
from pathlib import Path

# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

import pytest  # noqa: E402

from fakes import (  # noqa: E402
    FakeArtworkDownloader,
    FakeCatalog,
    install_fake_tools,
    make_pipeline,
)


@pytest.fixture()
def fake_tools(tmp_path: Path):
    return install_fake_tools(tmp_path)


@pytest.fixture()
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture()
def artwork() -> FakeArtworkDownloader:
    return FakeArtworkDownloader()


@pytest.fixture()
def pipeline(tmp_path: Path, fake_tools, catalog, artwork):
    return make_pipeline(tmp_path, fake_tools, catalog, artwork)
