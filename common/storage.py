import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Union

# Settings are read through the module (config.X) so the backend and local
# directories can be switched at runtime, e.g. in tests.
from common import config
from common.job_schema import StagingTarget, TargetFormat

# ------------------------------------------------------------------------------
# CONDITIONAL IMPORTS
# Only the SDK for the configured backend has to be importable.
# ------------------------------------------------------------------------------

try:
    from google.cloud import storage as gcs
except ImportError:
    gcs = None

try:
    from azure.storage.blob import BlobSasPermissions, BlobServiceClient, generate_blob_sas
except ImportError:
    BlobServiceClient = None
    BlobSasPermissions = None
    generate_blob_sas = None

# ------------------------------------------------------------------------------
# CONSTANTS
# Folder structure inside the bucket/container.
# ------------------------------------------------------------------------------
STAGING_PREFIX = "uploads/"     # Large files waiting for /api/process-large
OUTPUT_PREFIX = "outputs/"      # Converted large files


class StagedObjectNotFound(FileNotFoundError):
    pass


def new_staging_key(filename: str) -> str:
    """uploads/<uuid>-<filename>, with the filename reduced to a single path segment."""
    clean = Path(filename.replace("\\", "/")).name.replace(" ", "_") or "upload"
    return f"{STAGING_PREFIX}{uuid.uuid4()}-{clean}"


def _check_backend() -> str:
    backend = config.STORAGE_BACKEND
    if backend not in ("local", "gcp", "azure"):
        raise RuntimeError(f"Unsupported STORAGE_BACKEND: {backend}")
    return backend


# ------------------------------------------------------------------------------
# LOCAL FILESYSTEM HELPERS
# Used when STORAGE_BACKEND="local". The API itself plays the part of the
# bucket: PUT /api/staging/{key} and GET /api/outputs/{name}.
# ------------------------------------------------------------------------------

def _inside(base: Path, relative: str) -> Path:
    """Resolves `relative` under `base`, refusing anything that escapes it."""
    base = base.resolve()
    path = (base / relative).resolve()
    if base != path and base not in path.parents:
        raise ValueError(f"Invalid object name: {relative}")
    return path


def _local_staging_path(key: str) -> Path:
    return _inside(config.LOCAL_STAGING_DIR, key)


def local_output_path(name: str) -> Path:
    return _inside(config.LOCAL_OUTPUT_DIR, name)


def _check_staging_key(key: str) -> None:
    if not key.startswith(STAGING_PREFIX):
        raise ValueError(f"Invalid staging key: {key}")


def save_staged_bytes(key: str, data: bytes) -> Path:
    """Receives an upload for the local backend."""
    _check_staging_key(key)
    if len(data) > config.STAGING_MAX_BYTES:
        raise ValueError("Staged file exceeds the upload limit")
    dest = _local_staging_path(key)
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(data)
    return dest


# ------------------------------------------------------------------------------
# GOOGLE CLOUD STORAGE (GCS) HELPERS
# Used when STORAGE_BACKEND="gcp".
# ------------------------------------------------------------------------------

def _get_gcs_client():
    if not gcs:
        raise RuntimeError("google-cloud-storage library is not installed.")
    return gcs.Client()


def _gcs_bucket_name() -> str:
    if not config.GCS_BUCKET:
        raise ValueError("GCS_BUCKET env var is required for GCP backend")
    return config.GCS_BUCKET


def _gcs_blob(object_name: str):
    client = _get_gcs_client()
    return client.bucket(_gcs_bucket_name()).blob(object_name)


# ------------------------------------------------------------------------------
# AZURE BLOB STORAGE HELPERS
# Used when STORAGE_BACKEND="azure".
# ------------------------------------------------------------------------------

def _get_azure_client():
    if not BlobServiceClient:
        raise RuntimeError("azure-storage-blob library is not installed.")
    if not config.AZURE_CONN_STR:
        raise ValueError("AZURE_STORAGE_CONNECTION_STRING env var is missing.")
    return BlobServiceClient.from_connection_string(config.AZURE_CONN_STR)


def _azure_blob_client(object_name: str):
    if not config.AZURE_CONTAINER:
        raise ValueError("AZURE_CONTAINER env var is required for Azure backend")
    client = _get_azure_client()
    return client.get_container_client(config.AZURE_CONTAINER).get_blob_client(object_name)


def _azure_sas_url(blob_client, permission, expires_in: int) -> str:
    """Signs a URL for one blob with the account key from the connection string."""
    sas = generate_blob_sas(
        account_name=blob_client.account_name,
        container_name=blob_client.container_name,
        blob_name=blob_client.blob_name,
        account_key=blob_client.credential.account_key,
        permission=permission,
        expiry=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    )
    return f"{blob_client.url}?{sas}"


# ------------------------------------------------------------------------------
# PUBLIC API FUNCTIONS
# The API routes call THESE; they dispatch on STORAGE_BACKEND.
# ------------------------------------------------------------------------------

def create_staging_target(filename: str, content_type: str) -> StagingTarget:
    """
    Reserves a staging key and returns where the client should upload the bytes.
    The client uploads out-of-band; the server only sees the key again in
    /api/process-large.
    """
    backend = _check_backend()
    key = new_staging_key(filename)

    if backend == "local":
        return StagingTarget(
            url=f"{config.PUBLIC_BASE_URL.rstrip('/')}/api/staging/{key}",
            method="PUT",
            headers={"Content-Type": content_type},
            key=key,
        )

    elif backend == "gcp":
        client = _get_gcs_client()
        # Signed policy document for a browser-style multipart POST
        policy = client.generate_signed_post_policy_v4(
            _gcs_bucket_name(),
            key,
            expiration=timedelta(seconds=config.STAGING_EXPIRY_SECONDS),
            conditions=[
                ["content-length-range", 0, config.STAGING_MAX_BYTES],
                ["starts-with", "$Content-Type", content_type],
            ],
            fields={"Content-Type": content_type},
        )
        return StagingTarget(url=policy["url"], method="POST", fields=policy["fields"], key=key)

    else:
        blob_client = _azure_blob_client(key)
        url = _azure_sas_url(
            blob_client,
            BlobSasPermissions(create=True, write=True),
            config.STAGING_EXPIRY_SECONDS,
        )
        return StagingTarget(
            url=url,
            method="PUT",
            headers={"x-ms-blob-type": "BlockBlob", "Content-Type": content_type},
            key=key,
        )


def read_staged_bytes(key: str) -> bytes:
    """Downloads a staged object. Raises StagedObjectNotFound if it is missing."""
    backend = _check_backend()
    _check_staging_key(key)

    if backend == "local":
        path = _local_staging_path(key)
        if not path.is_file():
            raise StagedObjectNotFound(key)
        return path.read_bytes()

    elif backend == "gcp":
        blob = _gcs_blob(key)
        if not blob.exists():
            raise StagedObjectNotFound(key)
        return blob.download_as_bytes()

    else:
        blob_client = _azure_blob_client(key)
        if not blob_client.exists():
            raise StagedObjectNotFound(key)
        return blob_client.download_blob().readall()


def delete_staged(key: str) -> None:
    """Removes a staged object once it has been converted. Missing objects are ignored."""
    backend = _check_backend()
    _check_staging_key(key)

    if backend == "local":
        _local_staging_path(key).unlink(missing_ok=True)

    elif backend == "gcp":
        blob = _gcs_blob(key)
        if blob.exists():
            blob.delete()

    else:
        blob_client = _azure_blob_client(key)
        if blob_client.exists():
            blob_client.delete_blob()


def store_output(data: bytes, target_format: Union[str, TargetFormat]) -> str:
    """
    Uploads converted bytes to outputs/<uuid>.<ext> and returns a URL the
    client can download them from (a signed URL on the cloud backends).
    """
    backend = _check_backend()
    fmt = TargetFormat.parse(target_format)
    name = f"{uuid.uuid4().hex}.{fmt.extension}"

    if backend == "local":
        dest = local_output_path(name)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
        return f"{config.PUBLIC_BASE_URL.rstrip('/')}/api/outputs/{name}"

    elif backend == "gcp":
        blob = _gcs_blob(f"{OUTPUT_PREFIX}{name}")
        blob.upload_from_string(data, content_type=fmt.content_type)
        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=config.OUTPUT_URL_EXPIRY_SECONDS),
            method="GET",
        )

    else:
        blob_client = _azure_blob_client(f"{OUTPUT_PREFIX}{name}")
        blob_client.upload_blob(data, overwrite=True)
        return _azure_sas_url(
            blob_client,
            BlobSasPermissions(read=True),
            config.OUTPUT_URL_EXPIRY_SECONDS,
        )
