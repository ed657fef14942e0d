"""Transfer pipelines: upload, download and access administration.

Example usage:
    from capshare.transfer import UploadOrchestrator, UploadRequest

    uploader = UploadOrchestrator(ledger, signer, config, blob_store, threshold_client)
    result = await uploader.upload(UploadRequest("report.pdf", data, grants=[bob]))
    print(result.link(base_url))
"""

from .download import DownloadOrchestrator, DownloadResult, safe_filename
from .progress import ProgressTracker
from .sharing import AccessManager
from .upload import UploadOrchestrator, UploadRequest, UploadResult

__all__ = [
    "AccessManager",
    "DownloadOrchestrator",
    "DownloadResult",
    "ProgressTracker",
    "UploadOrchestrator",
    "UploadRequest",
    "UploadResult",
    "safe_filename",
]
