"""
Storage providers for backup archives.

Supports:
- S3Storage: AWS S3 and S3-compatible services (Backblaze B2, ...)
- GoogleDriveStorage: Google Drive folder via a service account

Every provider exposes the same operations (upload, download, delete,
list_objects, test_connection) over keys living under BACKUP_PREFIX.
"""

import io
import json
import os
import re
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from dateutil.parser import isoparse
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload, MediaIoBaseDownload

BACKUP_PREFIX = 'backups/'
ARCHIVE_MARKER = 'backup-'
ARCHIVE_EXTENSION = '.tar.gz'

# Uploads above this size go through a multipart upload
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024

DRIVE_SCOPES = ['https://www.googleapis.com/auth/drive.file']

_B2_ENDPOINT_REGION = re.compile(r'^(?:https?://)?s3\.([a-z0-9-]+)\.backblazeb2\.com', re.IGNORECASE)


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


class ConfigurationError(Exception):
    """Raised when backup configuration is missing or invalid (before any I/O)."""
    pass


def _client_error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', 'Unknown')


class StorageProvider:
    """Base class for storage providers."""

    def upload(self, key: str, local_path: str) -> None:
        raise NotImplementedError

    def download(self, key: str, dest_path: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def list_objects(self) -> List[Dict[str, Any]]:
        """
        List backup archives, newest first.

        Returns:
            List of dicts with 'key', 'size' and 'last_modified' keys
        """
        raise NotImplementedError

    def test_connection(self) -> bool:
        raise NotImplementedError


class S3Storage(StorageProvider):
    """
    Provider for AWS S3 and S3-compatible object storage.

    When endpoint_url is set (B2, MinIO, ...) path-style addressing is used,
    since virtual-host addressing relies on DNS the third party does not serve.
    """

    def __init__(self, access_key: str, secret_key: str, bucket_name: str,
                 region: str = 'us-east-1', endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket_name: Bucket name
            region: Region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible services
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url or None
        self.addressing_style = 'path' if self.endpoint_url else 'virtual'

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=self.endpoint_url,
                config=BotoConfig(s3={'addressing_style': self.addressing_style})
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def upload(self, key: str, local_path: str) -> None:
        """
        Upload archive to the bucket.

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            if os.path.getsize(local_path) > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key)
            else:
                with open(local_path, 'rb') as f:
                    self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=f)
        except ClientError as e:
            raise StorageError(f"S3 upload failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")

    def _multipart_upload(self, local_path: str, key: str):
        """Upload a large file in MULTIPART_CHUNK_SIZE parts, aborting on error."""
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except Exception:
            try:
                self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=key, UploadId=upload_id)
            except (ClientError, BotoCoreError):
                pass
            raise

    def download(self, key: str, dest_path: str) -> None:
        try:
            self.s3_client.download_file(self.bucket_name, key, dest_path)
        except ClientError as e:
            code = _client_error_code(e)
            if code in ('404', 'NoSuchKey'):
                raise StorageError(f"Backup not found in bucket {self.bucket_name}: {key}")
            raise StorageError(f"S3 download failed ({code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 download failed: {e}")

    def delete(self, key: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 delete failed: {e}")

    def list_objects(self) -> List[Dict[str, Any]]:
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=BACKUP_PREFIX):
                for obj in page.get('Contents', []):
                    if not obj['Key'].endswith(ARCHIVE_EXTENSION):
                        continue
                    objects.append({
                        'key': obj['Key'],
                        'size': obj.get('Size', 0),
                        'last_modified': obj['LastModified']
                    })

            objects.sort(key=lambda o: o['last_modified'], reverse=True)
            return objects

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 list failed: {e}")

    def test_connection(self) -> bool:
        """
        Test bucket access.

        Raises:
            StorageError: If the bucket is missing or not accessible
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _client_error_code(e)
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


class GoogleDriveStorage(StorageProvider):
    """
    Provider for a Google Drive folder shared with a service account.

    Drive has no key-based addressing: files are looked up by exact name
    inside the folder before they can be downloaded or deleted.
    """

    def __init__(self, credentials_json, folder_id: str):
        """
        Args:
            credentials_json: Service account JSON document (str or dict)
            folder_id: Drive folder the backups are written to

        Raises:
            ConfigurationError: If the credential document is not valid JSON
        """
        if isinstance(credentials_json, str):
            try:
                info = json.loads(credentials_json)
            except ValueError as e:
                raise ConfigurationError(f"Invalid Google Drive credentials JSON: {e}")
        else:
            info = credentials_json

        if not isinstance(info, dict):
            raise ConfigurationError("Invalid Google Drive credentials JSON: expected an object")

        self.folder_id = folder_id

        try:
            credentials = service_account.Credentials.from_service_account_info(info, scopes=DRIVE_SCOPES)
        except (ValueError, KeyError) as e:
            raise ConfigurationError(f"Invalid Google Drive service account: {e}")

        self.service = build('drive', 'v3', credentials=credentials, cache_discovery=False)

    @staticmethod
    def _quote(value: str) -> str:
        return value.replace('\\', '\\\\').replace("'", "\\'")

    @staticmethod
    def _file_name(key: str) -> str:
        # Drive folders are flat, the key prefix is not part of the name
        return key.rsplit('/', 1)[-1]

    def _find_file_id(self, name: str) -> Optional[str]:
        response = self.service.files().list(
            q=f"'{self._quote(self.folder_id)}' in parents and name = '{self._quote(name)}' and trashed = false",
            fields='files(id)',
            pageSize=1
        ).execute()

        files = response.get('files', [])
        return files[0]['id'] if files else None

    def upload(self, key: str, local_path: str) -> None:
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            media = MediaFileUpload(local_path, mimetype='application/gzip', resumable=True)
            self.service.files().create(
                body={'name': self._file_name(key), 'parents': [self.folder_id]},
                media_body=media,
                fields='id'
            ).execute()
        except (HttpError, GoogleAuthError) as e:
            raise StorageError(f"Google Drive upload failed: {e}")

    def download(self, key: str, dest_path: str) -> None:
        try:
            file_id = self._find_file_id(self._file_name(key))
            if not file_id:
                raise StorageError(f"File not found in Google Drive: {key}")

            request = self.service.files().get_media(fileId=file_id)
            with io.FileIO(dest_path, 'wb') as fh:
                downloader = MediaIoBaseDownload(fh, request, chunksize=MULTIPART_CHUNK_SIZE)
                done = False
                while not done:
                    _, done = downloader.next_chunk()
        except (HttpError, GoogleAuthError) as e:
            raise StorageError(f"Google Drive download failed: {e}")

    def delete(self, key: str) -> None:
        try:
            file_id = self._find_file_id(self._file_name(key))
            if not file_id:
                raise StorageError(f"File not found in Google Drive: {key}")

            self.service.files().delete(fileId=file_id).execute()
        except (HttpError, GoogleAuthError) as e:
            raise StorageError(f"Google Drive delete failed: {e}")

    def list_objects(self) -> List[Dict[str, Any]]:
        query = (
            f"'{self._quote(self.folder_id)}' in parents and name contains '{ARCHIVE_MARKER}' "
            f"and trashed = false"
        )

        try:
            objects = []
            page_token = None

            while True:
                response = self.service.files().list(
                    q=query,
                    fields='nextPageToken, files(id, name, size, modifiedTime)',
                    orderBy='modifiedTime desc',
                    pageToken=page_token
                ).execute()

                for item in response.get('files', []):
                    objects.append({
                        'key': item['name'],
                        'size': int(item.get('size', 0)),
                        'last_modified': isoparse(item['modifiedTime']),
                        'file_id': item['id']
                    })

                page_token = response.get('nextPageToken')
                if not page_token:
                    break

            objects.sort(key=lambda o: o['last_modified'], reverse=True)
            return objects

        except (HttpError, GoogleAuthError) as e:
            raise StorageError(f"Google Drive list failed: {e}")

    def test_connection(self) -> bool:
        try:
            self.service.files().list(
                q=f"'{self._quote(self.folder_id)}' in parents and trashed = false",
                pageSize=1,
                fields='files(id)'
            ).execute()
            return True
        except (HttpError, GoogleAuthError) as e:
            raise StorageError(f"Google Drive connection test failed: {e}")


def _pick(credentials: Dict[str, Any], *names: str) -> Optional[str]:
    """Return the first non-empty value among alternative credential field names."""
    for name in names:
        value = credentials.get(name)
        if value not in (None, ''):
            return value.strip() if isinstance(value, str) else value
    return None


def _require(provider: str, field: str, value):
    if value in (None, ''):
        raise ConfigurationError(f"Missing {provider} credential: {field}")
    return value


def region_from_b2_endpoint(endpoint: str) -> Optional[str]:
    """Extract the region from a B2 endpoint like https://s3.us-west-004.backblazeb2.com"""
    match = _B2_ENDPOINT_REGION.match(endpoint or '')
    return match.group(1).lower() if match else None


def create_storage(provider: str, credentials: Dict[str, Any]) -> StorageProvider:
    """
    Factory function to create a storage provider from credentials.

    Accepts both settings-style field names (backup_s3_access_key, ...) and the
    short names used by the destination form (access_key, ...).

    Args:
        provider: 's3', 'b2' or 'gdrive'
        credentials: Credential fields for the provider

    Returns:
        StorageProvider instance

    Raises:
        ConfigurationError: If provider is unknown or a required field is missing
    """
    credentials = credentials or {}

    if provider == 's3':
        return S3Storage(
            access_key=_require('s3', 'access_key', _pick(credentials, 'backup_s3_access_key', 'access_key')),
            secret_key=_require('s3', 'secret_key', _pick(credentials, 'backup_s3_secret_key', 'secret_key')),
            bucket_name=_require('s3', 'bucket', _pick(credentials, 'backup_s3_bucket', 'bucket')),
            region=_pick(credentials, 'backup_s3_region', 'region') or 'us-east-1',
            endpoint_url=_pick(credentials, 'backup_s3_endpoint', 'endpoint')
        )

    elif provider == 'b2':
        endpoint = _require('b2', 'endpoint', _pick(credentials, 'backup_b2_endpoint', 'endpoint'))
        if not endpoint.startswith(('http://', 'https://')):
            endpoint = f"https://{endpoint}"
        return S3Storage(
            access_key=_require('b2', 'key_id', _pick(credentials, 'backup_b2_key_id', 'key_id')),
            secret_key=_require('b2', 'app_key', _pick(credentials, 'backup_b2_app_key', 'app_key')),
            bucket_name=_require('b2', 'bucket', _pick(credentials, 'backup_b2_bucket', 'bucket')),
            region=_pick(credentials, 'region') or region_from_b2_endpoint(endpoint) or 'us-west-004',
            endpoint_url=endpoint
        )

    elif provider == 'gdrive':
        return GoogleDriveStorage(
            credentials_json=_require('gdrive', 'credentials',
                                      _pick(credentials, 'backup_gdrive_credentials', 'credentials')),
            folder_id=_require('gdrive', 'folder_id', _pick(credentials, 'backup_gdrive_folder_id', 'folder_id'))
        )

    raise ConfigurationError(f"Unknown backup provider: {provider}")


def storage_for_destination(destination, cipher=None) -> StorageProvider:
    """
    Build the storage provider for a persisted BackupDestination.

    Args:
        destination: BackupDestination instance
        cipher: CredentialCipher (defaults to one built from the current app)
    """
    if cipher is None:
        from backvault.utils.crypto import get_credential_cipher
        cipher = get_credential_cipher()

    try:
        credentials = cipher.decrypt_credentials(destination.credentials_encrypted)
    except Exception as e:
        raise ConfigurationError(f"Cannot read credentials for destination '{destination.name}': {e}")

    return create_storage(destination.provider, credentials)
