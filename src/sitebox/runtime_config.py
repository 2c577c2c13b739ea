"""Writes the application's runtime configuration (wp-config.php).

The file always points at the database that was actually provisioned, which
may differ from the one the site asked for after a downgrade. URL-mode
switches only touch the URL constants so user edits elsewhere survive.
"""

from pathlib import Path
import re
import secrets

import structlog

from sitebox.database.provisioner import ProvisionResult
from sitebox.models import DatabaseKind, Site

logger = structlog.get_logger()

CONFIG_FILENAME = "wp-config.php"
SQLITE_PLUGIN_DIR = "sqlite-database-integration"
SALT_NAMES = (
    "AUTH_KEY",
    "SECURE_AUTH_KEY",
    "LOGGED_IN_KEY",
    "NONCE_KEY",
    "AUTH_SALT",
    "SECURE_AUTH_SALT",
    "LOGGED_IN_SALT",
    "NONCE_SALT",
)
URL_CONSTANTS = ("WP_HOME", "WP_SITEURL")

DB_DROPIN = """<?php
/**
 * SQLite database drop-in, generated by SiteBox.
 * Loads the integration shipped with the sqlite-database-integration plugin.
 */
$sqlite_plugin_path = __DIR__ . '/plugins/sqlite-database-integration/wp-includes/sqlite/db.php';

if ( file_exists( $sqlite_plugin_path ) ) {
    require_once $sqlite_plugin_path;
} else {
    wp_die(
        '<h1>SQLite Database Integration Error</h1>' .
        '<p>The SQLite Integration plugin is not installed.</p>' .
        '<p>Expected location: <code>' . $sqlite_plugin_path . '</code></p>',
        'SQLite Plugin Not Found',
        array( 'response' => 500 )
    );
}
"""


def php_quote(value: str) -> str:
    """Single-quoted PHP string literal."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _define(name: str, value: str | bool) -> str:
    if isinstance(value, bool):
        return f"define( '{name}', {'true' if value else 'false'} );"
    return f"define( '{name}', {php_quote(value)} );"


class RuntimeConfigWriter:
    def config_path(self, site: Site) -> Path:
        return site.document_root / CONFIG_FILENAME

    def render(self, site: Site, database: ProvisionResult, url: str) -> str:
        lines = [
            "<?php",
            "/**",
            f" * WordPress configuration for site '{site.name}', generated by SiteBox.",
            f" * Database engine: {database.engine.value}",
            " */",
            "",
        ]

        if database.engine is DatabaseKind.SQLITE:
            lines += [
                "// ** SQLite database settings ** //",
                "define( 'DB_DIR', __DIR__ . '/wp-content/database/' );",
                _define("DB_FILE", ".ht.sqlite"),
                _define("DB_NAME", database.db_name),
                _define("DB_USER", ""),
                _define("DB_PASSWORD", ""),
                _define("DB_HOST", ""),
            ]
        else:
            lines += [
                f"// ** {database.engine.value} database settings ** //",
                _define("DB_NAME", database.db_name),
                _define("DB_USER", database.user),
                _define("DB_PASSWORD", database.password),
                _define("DB_HOST", database.host_with_port),
            ]
        lines += [
            _define("DB_CHARSET", "utf8mb4"),
            _define("DB_COLLATE", ""),
            "",
            "/** Authentication unique keys and salts. */",
        ]
        lines += [_define(name, secrets.token_urlsafe(48)) for name in SALT_NAMES]
        lines += [
            "",
            "$table_prefix = 'wp_';",
            "",
            _define("WP_DEBUG", True),
            _define("WP_DEBUG_LOG", True),
            _define("WP_DEBUG_DISPLAY", False),
            "",
            "/** Site URLs */",
            _define("WP_HOME", url),
            _define("WP_SITEURL", url),
            "",
            "/* That's all, stop editing! Happy publishing. */",
            "",
            "if ( ! defined( 'ABSPATH' ) ) {",
            "    define( 'ABSPATH', __DIR__ . '/' );",
            "}",
            "",
            "require_once ABSPATH . 'wp-settings.php';",
            "",
        ]
        return "\n".join(lines)

    def write(self, site: Site, database: ProvisionResult, url: str) -> Path:
        """Regenerate wp-config.php (and the SQLite drop-in when needed)."""
        path = self.config_path(site)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render(site, database, url), encoding="utf-8")

        content_dir = site.document_root / "wp-content"
        dropin = content_dir / "db.php"
        if database.engine is DatabaseKind.SQLITE:
            (content_dir / "database").mkdir(parents=True, exist_ok=True)
            dropin.write_text(DB_DROPIN, encoding="utf-8")
            plugin = content_dir / "plugins" / SQLITE_PLUGIN_DIR
            if not plugin.is_dir():
                logger.warning("sqlite_plugin_missing", site_id=site.id, expected=str(plugin))
        elif dropin.exists() and SQLITE_PLUGIN_DIR in dropin.read_text(encoding="utf-8"):
            # Site moved back to a server engine
            dropin.unlink()

        logger.info(
            "runtime_config_written",
            site_id=site.id,
            engine=database.engine.value,
            url=url,
        )
        return path

    def rewrite_urls(self, site: Site, url: str) -> bool:
        """Replace WP_HOME/WP_SITEURL in place.

        Returns:
            False when there is no configuration file yet
        """
        path = self.config_path(site)
        if not path.exists():
            return False

        content = path.read_text(encoding="utf-8")
        for name in URL_CONSTANTS:
            pattern = re.compile(rf"define\(\s*'{name}',\s*'[^']*'\s*\);")
            replacement = _define(name, url)
            content, count = pattern.subn(lambda _m, r=replacement: r, content)
            if count == 0:
                logger.debug("url_constant_missing", site_id=site.id, constant=name)

        path.write_text(content, encoding="utf-8")
        logger.info("runtime_config_urls_updated", site_id=site.id, url=url)
        return True

    def read_url(self, site: Site) -> str | None:
        path = self.config_path(site)
        if not path.exists():
            return None
        match = re.search(
            r"define\(\s*'WP_HOME',\s*'([^']*)'\s*\);", path.read_text(encoding="utf-8")
        )
        return match.group(1) if match else None
