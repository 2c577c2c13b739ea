"""Unit tests for RuntimeConfigWriter."""

import pytest

from sitebox.database.provisioner import ProvisionResult
from sitebox.models import DatabaseKind
from sitebox.runtime_config import RuntimeConfigWriter, php_quote


@pytest.fixture
def writer():
    return RuntimeConfigWriter()


@pytest.fixture
def mysql_result():
    return ProvisionResult(
        engine=DatabaseKind.MYSQL, version="8.0", db_name="blog_db", port=3307, password="pw"
    )


def test_php_quote_escapes():
    assert php_quote("it's") == "'it\\'s'"
    assert php_quote("a\\b") == "'a\\\\b'"


class TestRender:
    def test_server_engine(self, writer, make_site, mysql_result):
        content = writer.render(make_site(), mysql_result, "http://localhost:8001")

        assert "define( 'DB_NAME', 'blog_db' );" in content
        assert "define( 'DB_USER', 'root' );" in content
        assert "define( 'DB_PASSWORD', 'pw' );" in content
        assert "define( 'DB_HOST', '127.0.0.1:3307' );" in content
        assert "DB_DIR" not in content

    def test_sqlite(self, writer, make_site, sqlite_result):
        content = writer.render(make_site(), sqlite_result, "http://localhost:8001")

        assert "define( 'DB_DIR', __DIR__ . '/wp-content/database/' );" in content
        assert "define( 'DB_FILE', '.ht.sqlite' );" in content
        assert "define( 'DB_HOST', '' );" in content

    def test_debug_and_urls(self, writer, make_site, sqlite_result):
        content = writer.render(make_site(), sqlite_result, "http://blog.local:8001")

        assert "define( 'WP_DEBUG', true );" in content
        assert "define( 'WP_DEBUG_DISPLAY', false );" in content
        assert "define( 'WP_HOME', 'http://blog.local:8001' );" in content
        assert "define( 'WP_SITEURL', 'http://blog.local:8001' );" in content
        assert content.rstrip().endswith("require_once ABSPATH . 'wp-settings.php';")

    def test_salts_are_fresh(self, writer, make_site, sqlite_result):
        site = make_site()

        first = writer.render(site, sqlite_result, "http://localhost:8001")
        second = writer.render(site, sqlite_result, "http://localhost:8001")

        assert first != second
        assert first.count("_SALT'") == 4


class TestWrite:
    def test_sqlite_writes_dropin(self, writer, make_site, sqlite_result):
        site = make_site()

        path = writer.write(site, sqlite_result, "http://localhost:8001")

        assert path == site.document_root / "wp-config.php"
        dropin = site.document_root / "wp-content" / "db.php"
        assert "sqlite-database-integration" in dropin.read_text()
        assert (site.document_root / "wp-content" / "database").is_dir()

    def test_server_engine_removes_sqlite_dropin(
        self, writer, make_site, sqlite_result, mysql_result
    ):
        site = make_site()
        writer.write(site, sqlite_result, "http://localhost:8001")

        writer.write(site, mysql_result, "http://localhost:8001")

        assert not (site.document_root / "wp-content" / "db.php").exists()

    def test_foreign_dropin_is_kept(self, writer, make_site, mysql_result):
        site = make_site()
        dropin = site.document_root / "wp-content" / "db.php"
        dropin.parent.mkdir(parents=True)
        dropin.write_text("<?php // caching drop-in")

        writer.write(site, mysql_result, "http://localhost:8001")

        assert dropin.exists()


class TestRewriteUrls:
    def test_only_url_constants_change(self, writer, make_site, mysql_result):
        site = make_site()
        path = writer.write(site, mysql_result, "http://localhost:8001")
        edited = path.read_text() + "\ndefine( 'MY_SETTING', 'kept' );\n"
        path.write_text(edited)

        assert writer.rewrite_urls(site, "http://blog.local:8001") is True

        content = path.read_text()
        assert writer.read_url(site) == "http://blog.local:8001"
        assert "define( 'WP_SITEURL', 'http://blog.local:8001' );" in content
        assert "define( 'MY_SETTING', 'kept' );" in content
        assert "define( 'DB_PASSWORD', 'pw' );" in content
        assert "localhost" not in content

    def test_missing_config(self, writer, make_site):
        site = make_site()

        assert writer.rewrite_urls(site, "http://blog.local:8001") is False
        assert writer.read_url(site) is None
