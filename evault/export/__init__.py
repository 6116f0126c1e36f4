"""Export bundles: manifest, custody-log transcript, archive, offline verification."""

from .bundle import ExportBundle, build_export_zip, bundle_root_name, write_export_zip  # noqa: F401
from .content import OutputMode, Variant, content_strategy  # noqa: F401
from .custody_log import CustodyLog, build_custody_log  # noqa: F401
from .manifest import (  # noqa: F401
    ExportManifest,
    ManifestBuild,
    ManifestFileEntry,
    build_export_manifest,
    manifest_to_csv,
)
from .verifier import (  # noqa: F401
    VerificationReport,
    verify_bundle,
    verify_bundle_dir,
    verify_bundle_zip,
    verify_custody_log,
    verify_files,
)
