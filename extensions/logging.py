from __future__ import annotations
import logging
from pathlib import Path
from typing import Dict, Optional
from contextvars import ContextVar

from .output_paths import ensure_site_dirs

# Per-task context: which site are we crawling right now?
_CURRENT_SITE: ContextVar[Optional[str]] = ContextVar("_CURRENT_SITE", default=None)


class _SiteFilter(logging.Filter):
    """
    Allow records if they were emitted while this site was the active context OR
    if their logger name starts with site.<key>.
    This lets us attach the handler high (root) and still isolate per site.
    """
    def __init__(self, site_key: str) -> None:
        super().__init__()
        self.site_key = str(site_key)

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        current = _CURRENT_SITE.get()
        if current == self.site_key:
            return True
        name = getattr(record, "name", "") or ""
        return name.startswith(f"site.{self.site_key}")


class LoggingExtension:
    def __init__(
        self,
        log_file: Optional[Path] = None,   # run-wide log file, in addition to per-site files
        *,
        global_level: int = logging.INFO,
        per_site_level: Optional[int] = None,  # default to global_level if None
    ) -> None:
        self.log_file = log_file
        self.global_level = global_level
        self.per_site_level = per_site_level if per_site_level is not None else global_level
        self._site_handlers: Dict[str, logging.Handler] = {}
        self._run_handler: Optional[logging.Handler] = None

        # Console formatter/handler on root
        self._install_console(self.global_level)
        if log_file is not None:
            self._install_run_file(log_file, self.global_level)

        # Make root permissive; rely on handler levels to filter.
        logging.getLogger().setLevel(logging.DEBUG)
        # httpx logs every request at INFO; one line per id is already ours.
        logging.getLogger("httpx").setLevel(logging.WARNING)

    # ---------------- Console ----------------

    def _install_console(self, level: int) -> None:
        root = logging.getLogger()
        # Remove any default handlers (e.g., from basicConfig)
        for h in list(root.handlers):
            root.removeHandler(h)

        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        root.addHandler(ch)

    def _install_run_file(self, log_file: Path, level: int) -> None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(
            fmt="%(levelname)s %(asctime)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logging.getLogger().addHandler(fh)
        self._run_handler = fh

    # ---------------- Site logger ----------------

    def get_site_logger(self, site_key: str) -> logging.Logger:
        """
        Return a site-scoped logger. Also ensures a per-site file handler is
        attached high at root with a filter that routes only the current
        site's logs into that file.
        """
        dirs = ensure_site_dirs(site_key)
        site_log_path = dirs["logs"] / f"{site_key}.log"

        if site_key not in self._site_handlers:
            fh = logging.FileHandler(site_log_path, mode="a", encoding="utf-8")
            fh.setLevel(self.per_site_level)
            fh.addFilter(_SiteFilter(site_key))
            fh.setFormatter(logging.Formatter(
                fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            logging.getLogger().addHandler(fh)
            self._site_handlers[site_key] = fh

        logger = logging.getLogger(f"site.{site_key}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = True
        return logger

    # ---------------- Context helpers ----------------

    def set_site_context(self, site_key: str):
        """
        Activate the per-task site context so any module logger emits into
        that site's file. Returns a token you must reset when done.
        """
        return _CURRENT_SITE.set(str(site_key))

    def reset_site_context(self, token) -> None:
        try:
            _CURRENT_SITE.reset(token)
        except ValueError:
            # token created in another context
            pass

    # ---------------- Cleanup ----------------

    def close(self):
        root = logging.getLogger()
        handlers = list(self._site_handlers.values())
        if self._run_handler is not None:
            handlers.append(self._run_handler)
        for fh in handlers:
            root.removeHandler(fh)
            fh.flush()
            fh.close()
        self._site_handlers.clear()
        self._run_handler = None
