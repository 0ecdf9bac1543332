"""Build metadata reported by ``-version``.

The release build stamps ``commit`` and ``date`` in place, e.g.::

    sed -i "s/^commit = .*/commit = \"$(git rev-parse HEAD)\"/" defertest/version.py
"""

from __future__ import annotations

from defertest.config import Settings

__version__ = "0.1.0"

commit = ""
date = ""


def version_line(settings: Settings | None = None) -> str:
    build_commit = commit
    build_date = date
    if settings is not None:
        build_commit = settings.build_commit or build_commit
        build_date = settings.build_date or build_date
    return f"commit: {build_commit} \tdate(UTC): {build_date}"
