"""
Install service — package re-exports.

    from formulary.core.services.install import install, smoke_test

Each step lives in its own module, in pipeline order:
fetcher → verifier → builder → smoke, tied together by pipeline.
"""

from formulary.core.services.install.builder import (  # noqa: F401
    build,
    build_command,
    build_directory,
    check_toolchain,
    commit_stage,
    unpack,
)
from formulary.core.services.install.fetcher import fetch, fetch_head, fetch_url  # noqa: F401
from formulary.core.services.install.pipeline import (  # noqa: F401
    InstallRun,
    fetch_only,
    install,
)
from formulary.core.services.install.smoke import smoke_test  # noqa: F401
from formulary.core.services.install.verifier import sha256_file, verify  # noqa: F401
