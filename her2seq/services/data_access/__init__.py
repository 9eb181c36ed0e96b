"""Loading expression counts and clinical tables from GDC or portal exports."""

from her2seq.services.data_access.gdc_download_service import (
    GDCDownloadError,
    GDCDownloadService,
)
from her2seq.services.data_access.portal_export_service import (
    PortalExportError,
    PortalExportService,
)

__all__ = [
    "GDCDownloadError",
    "GDCDownloadService",
    "PortalExportError",
    "PortalExportService",
]
