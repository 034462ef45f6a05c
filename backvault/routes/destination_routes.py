"""
Destination routes - manage the named targets backups are uploaded to.

Secret credential fields are never returned; they are replaced by a mask.
Sending the mask back on update keeps the stored secret.
"""

import json
import logging
from flask import Blueprint, jsonify, request

from backvault import db
from backvault.models import BackupDestination, PROVIDERS
from backvault.activity import actor_from_request, log_activity
from backvault.utils.crypto import get_credential_cipher
from backvault.backup.storage import ConfigurationError, StorageError, create_storage, storage_for_destination


bp = Blueprint('destinations', __name__, url_prefix='/api/backups/destinations')
logger = logging.getLogger(__name__)

SECRET_MASK = '********'

PROVIDER_FIELDS = {
    's3': ('access_key', 'secret_key', 'bucket', 'region', 'endpoint'),
    'b2': ('key_id', 'app_key', 'bucket', 'endpoint'),
    'gdrive': ('credentials', 'folder_id'),
}
REQUIRED_FIELDS = {
    's3': ('access_key', 'secret_key', 'bucket'),
    'b2': ('key_id', 'app_key', 'bucket', 'endpoint'),
    'gdrive': ('credentials', 'folder_id'),
}
SECRET_FIELDS = ('secret_key', 'app_key', 'credentials')


def _mask_credentials(credentials: dict) -> dict:
    return {
        key: (SECRET_MASK if key in SECRET_FIELDS and value else value)
        for key, value in credentials.items()
    }


def _clean_credentials(provider: str, raw) -> dict:
    """Keep the known fields of a provider, serializing an uploaded JSON document."""
    if not isinstance(raw, dict):
        raise ConfigurationError('credentials must be an object')

    credentials = {}
    for field in PROVIDER_FIELDS[provider]:
        value = raw.get(field)
        if isinstance(value, dict):
            value = json.dumps(value)
        if isinstance(value, str):
            value = value.strip()
        if value not in (None, ''):
            credentials[field] = value
    return credentials


def _validate_credentials(provider: str, credentials: dict):
    missing = [field for field in REQUIRED_FIELDS[provider] if not credentials.get(field)]
    if missing:
        raise ConfigurationError(f"Missing {provider} credential(s): {', '.join(missing)}")

    if provider == 'gdrive':
        try:
            json.loads(credentials['credentials'])
        except ValueError as e:
            raise ConfigurationError(f"Invalid Google Drive credentials JSON: {e}")


def _serialize_destination(destination: BackupDestination, cipher) -> dict:
    try:
        credentials = _mask_credentials(cipher.decrypt_credentials(destination.credentials_encrypted))
        readable = True
    except Exception as e:
        logger.warning(f"Cannot decrypt credentials of destination {destination.id}: {e}")
        credentials = {}
        readable = False

    return {
        'id': destination.id,
        'name': destination.name,
        'provider': destination.provider,
        'is_active': destination.is_active,
        'credentials': credentials,
        'credentials_readable': readable,
        'created_at': destination.created_at.isoformat() if destination.created_at else None,
        'updated_at': destination.updated_at.isoformat() if destination.updated_at else None
    }


def _audit(action: str, destination: BackupDestination, details: str = None):
    actor = actor_from_request(request)
    log_activity(
        action,
        'backup_destination',
        user_id=actor['user_id'],
        user_display_name=actor['user_name'],
        entity_id=destination.id,
        entity_label=destination.name,
        details=details
    )


@bp.route('', methods=['GET'])
def list_destinations():
    cipher = get_credential_cipher()
    destinations = BackupDestination.query.order_by(BackupDestination.id).all()
    return jsonify({'destinations': [_serialize_destination(d, cipher) for d in destinations]})


@bp.route('', methods=['POST'])
def create_destination():
    """
    Create a destination.

    Request body:
        - name: Display name (required)
        - provider: s3 / b2 / gdrive (required)
        - credentials: Provider credential fields (required)
        - is_active: Defaults to true
    """
    data = request.get_json(silent=True) or {}

    name = (data.get('name') or '').strip()
    provider = data.get('provider')

    if not name:
        return jsonify({'error': 'name is required'}), 400
    if provider not in PROVIDERS:
        return jsonify({'error': f"provider must be one of: {', '.join(PROVIDERS)}"}), 400

    try:
        credentials = _clean_credentials(provider, data.get('credentials') or {})
        _validate_credentials(provider, credentials)
    except ConfigurationError as e:
        return jsonify({'error': str(e)}), 400

    cipher = get_credential_cipher()
    destination = BackupDestination(
        name=name,
        provider=provider,
        credentials_encrypted=cipher.encrypt_credentials(credentials),
        is_active=bool(data.get('is_active', True))
    )
    db.session.add(destination)
    db.session.commit()

    _audit('backup_destination_created', destination, details=f"Provider: {provider}")
    return jsonify(_serialize_destination(destination, cipher)), 201


@bp.route('/<int:destination_id>', methods=['PUT'])
def update_destination(destination_id):
    """
    Update a destination.

    Credential fields equal to the mask keep their stored value.
    """
    destination = db.get_or_404(BackupDestination, destination_id)
    data = request.get_json(silent=True) or {}
    cipher = get_credential_cipher()

    if 'name' in data:
        name = (data.get('name') or '').strip()
        if not name:
            return jsonify({'error': 'name must not be empty'}), 400
        destination.name = name

    if 'is_active' in data:
        destination.is_active = bool(data['is_active'])

    if 'credentials' in data:
        try:
            stored = cipher.decrypt_credentials(destination.credentials_encrypted)
        except Exception:
            stored = {}

        try:
            submitted = _clean_credentials(destination.provider, data['credentials'] or {})
        except ConfigurationError as e:
            return jsonify({'error': str(e)}), 400

        for field, value in submitted.items():
            if value == SECRET_MASK:
                if field in stored:
                    submitted[field] = stored[field]
                else:
                    return jsonify({'error': f'{field} must be provided'}), 400

        try:
            _validate_credentials(destination.provider, submitted)
        except ConfigurationError as e:
            return jsonify({'error': str(e)}), 400

        destination.credentials_encrypted = cipher.encrypt_credentials(submitted)

    db.session.commit()

    _audit('backup_destination_updated', destination)
    return jsonify(_serialize_destination(destination, cipher))


@bp.route('/<int:destination_id>', methods=['DELETE'])
def delete_destination(destination_id):
    """Delete a destination. Its upload records are removed with it."""
    destination = db.get_or_404(BackupDestination, destination_id)

    _audit('backup_destination_deleted', destination)
    db.session.delete(destination)
    db.session.commit()

    return jsonify({'message': 'Destination deleted'})


@bp.route('/test', methods=['POST'])
def test_credentials():
    """
    Test credentials before saving a destination.

    Request body:
        - provider: s3 / b2 / gdrive
        - credentials: Provider credential fields
    """
    data = request.get_json(silent=True) or {}
    provider = data.get('provider')

    if provider not in PROVIDERS:
        return jsonify({'success': False, 'error': f'Unknown backup provider: {provider}'}), 400

    try:
        credentials = _clean_credentials(provider, data.get('credentials') or {})
        create_storage(provider, credentials).test_connection()
    except ConfigurationError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except StorageError as e:
        return jsonify({'success': False, 'error': str(e)})

    return jsonify({'success': True, 'message': 'Connection successful'})


@bp.route('/<int:destination_id>/test', methods=['POST'])
def test_destination(destination_id):
    destination = db.get_or_404(BackupDestination, destination_id)

    try:
        storage_for_destination(destination).test_connection()
    except ConfigurationError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except StorageError as e:
        return jsonify({'success': False, 'error': str(e)})

    return jsonify({'success': True, 'message': f"Connection to {destination.name} successful"})
