"""Unit tests for SiteStore."""

import pytest

from sitebox.models import DatabaseKind, SiteStatus
from sitebox.store import SiteStore


@pytest.fixture
def store(tmp_path):
    return SiteStore(tmp_path / "sites")


def test_save_and_load(store, make_site):
    site = make_site(database=DatabaseKind.MARIADB, status=SiteStatus.RUNNING)

    store.save(site)
    loaded = store.load(site.path)

    assert loaded == site
    assert not site.record_path.with_suffix(".tmp").exists()


def test_load_all_skips_unreadable(store, make_site):
    store.save(make_site("alpha"))
    store.save(make_site("beta"))
    broken = store.site_dir("broken")
    broken.mkdir()
    (broken / "sitebox.json").write_text("{oops")

    names = [s.name for s in store.load_all()]

    assert names == ["alpha", "beta"]
    assert store.list_broken_dirs() == [broken]


def test_old_records_still_load(store, make_site):
    site = make_site()
    site.record_path.write_text(
        '{"id": "abc", "name": "blog", "domain": "blog.local", '
        f'"path": "{site.path}", "port": 8001, "legacy_field": 1}}'
    )

    loaded = store.load(site.path)

    assert loaded.id == "abc"
    assert loaded.status is SiteStatus.STOPPED
    assert loaded.database is DatabaseKind.SQLITE


def test_purge_keeps_record(store, make_site):
    site = make_site()
    store.save(site)
    (site.document_root / "index.php").write_text("<?php")

    store.purge_contents(site)

    assert site.record_path.exists()
    assert not site.document_root.exists()


def test_delete_removes_directory(store, make_site):
    site = make_site()
    store.save(site)

    store.delete(site)

    assert not site.path.exists()
    assert store.load_all() == []
