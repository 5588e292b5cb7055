"""Certificate endpoints.

- ``GET|POST /certificates``: list / create
- ``GET|PATCH|DELETE /certificates/{fp}``: read / relabel / delete
- ``PUT /certificates/{fp}/settings``: replace the renewal policy
- ``POST /certificates/{fp}/san``, ``DELETE .../san/{type}/{value}``,
  ``POST .../san/apply``: subject alternative names
- ``POST /certificates/{fp}/renew``, ``GET .../check-renewal-passphrases``
- ``POST|DELETE /certificates/{fp}/passphrase``: stored passphrase
- ``GET .../files``, ``GET .../download[/{form}]``, ``POST .../convert``
- ``GET .../history`` and ``.../backups[...]``: snapshots
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING, Any

from flask import Blueprint, jsonify, request, send_file

from certkeeper.api.decorators import certificate_route, json_body, query_flag, success
from certkeeper.api.serializers import serialize_certificate, serialize_version
from certkeeper.app.context import get_container

if TYPE_CHECKING:
    from certkeeper.models.certificate import CertificateRecord
    from certkeeper.renewal import RenewalResult

certificates_bp = Blueprint("certificates", __name__)


def _serialize(record: CertificateRecord, *, detail: bool = False) -> dict[str, Any]:
    container = get_container()
    return serialize_certificate(
        record,
        container.index,
        container.engine,
        has_stored_passphrase=container.certificate_service.has_stored_passphrase(record),
        detail=detail,
    )


def _renewal_payload(result: RenewalResult) -> dict[str, Any]:
    return {
        "certificate": _serialize(result.record, detail=True),
        "previousFingerprint": result.previous_fingerprint,
        "version": serialize_version(result.version) if result.version else None,
        "deploymentQueued": result.dispatch is not None,
    }


def _send(data: bytes, filename: str, mimetype: str):
    return send_file(
        io.BytesIO(data),
        mimetype=mimetype,
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )


# -- collection ---------------------------------------------------------------


@certificates_bp.route("/certificates", methods=["GET"])
def list_certificates():
    """GET /certificates: every certificate with its derived status."""
    container = get_container()
    records = container.certificate_service.list_all(request.args.get("group"))
    return jsonify(
        {
            "certificates": [_serialize(r) for r in records],
            "groups": container.index.groups(),
        },
    )


@certificates_bp.route("/certificates", methods=["POST"])
def create_certificate():
    """POST /certificates: issue a new certificate."""
    record = get_container().certificate_service.create(json_body())
    return success(
        f"Certificate '{record.name}' created",
        201,
        certificate=_serialize(record, detail=True),
    )


# -- one certificate ----------------------------------------------------------


@certificates_bp.route("/certificates/<fp>", methods=["GET"])
@certificate_route
def get_certificate(fp):
    record = get_container().certificate_service.get(fp)
    return jsonify(_serialize(record, detail=True))


@certificates_bp.route("/certificates/<fp>", methods=["PATCH"])
@certificate_route
def update_certificate(fp):
    """PATCH /certificates/{fp}: name, description and group."""
    record = get_container().certificate_service.update(fp, json_body())
    return success("Certificate updated", certificate=_serialize(record, detail=True))


@certificates_bp.route("/certificates/<fp>/settings", methods=["PUT"])
@certificate_route
def update_settings(fp):
    """PUT /certificates/{fp}/settings: replace the renewal policy."""
    record = get_container().certificate_service.update_policy(fp, json_body())
    return success("Renewal settings updated", certificate=_serialize(record, detail=True))


@certificates_bp.route("/certificates/<fp>", methods=["DELETE"])
@certificate_route
def delete_certificate(fp):
    """DELETE /certificates/{fp}: refused while the certificate signs others."""
    service = get_container().certificate_service
    name = service.get(fp).name
    service.delete(fp)
    return success(f"Certificate '{name}' deleted")


# -- SANs ---------------------------------------------------------------------


@certificates_bp.route("/certificates/<fp>/san", methods=["POST"])
@certificate_route
def add_san(fp):
    """POST /certificates/{fp}/san: ``{value, type, idle}``."""
    record, renewed = get_container().certificate_service.add_san(fp, json_body())
    message = "Domain added and certificate renewed" if renewed else "Idle domain added"
    return success(message, certificate=_serialize(record, detail=True), renewed=renewed)


@certificates_bp.route("/certificates/<fp>/san/<kind>/<path:value>", methods=["DELETE"])
@certificate_route
def remove_san(fp, kind, value):
    """DELETE /certificates/{fp}/san/{type}/{value}?idle=bool."""
    record, renewed = get_container().certificate_service.remove_san(
        fp,
        kind,
        value,
        idle=query_flag("idle"),
        options=json_body(required=False),
    )
    message = "Domain removed and certificate renewed" if renewed else "Idle domain removed"
    return success(message, certificate=_serialize(record, detail=True), renewed=renewed)


@certificates_bp.route("/certificates/<fp>/san/apply", methods=["POST"])
@certificate_route
def apply_idle(fp):
    """POST /certificates/{fp}/san/apply: renew with the idle domains."""
    result = get_container().certificate_service.apply_idle(fp, json_body(required=False))
    return success("Idle domains applied", **_renewal_payload(result))


# -- renewal ------------------------------------------------------------------


@certificates_bp.route("/certificates/<fp>/renew", methods=["POST"])
@certificate_route
def renew(fp):
    """POST /certificates/{fp}/renew: ``{days, passphrase?, signingCAPassphrase?, storePassphrases?}``."""
    result = get_container().certificate_service.renew(fp, json_body(required=False))
    return success(f"Certificate '{result.record.name}' renewed", **_renewal_payload(result))


@certificates_bp.route("/certificates/<fp>/check-renewal-passphrases", methods=["GET"])
@certificate_route
def check_renewal_passphrases(fp):
    return jsonify(get_container().certificate_service.check_passphrases(fp))


@certificates_bp.route("/certificates/<fp>/passphrase", methods=["POST"])
@certificate_route
def store_passphrase(fp):
    """POST /certificates/{fp}/passphrase: ``{passphrase}``; verified before storing."""
    get_container().certificate_service.store_passphrase(fp, json_body().get("passphrase"))
    return success("Passphrase stored")


@certificates_bp.route("/certificates/<fp>/passphrase", methods=["DELETE"])
@certificate_route
def delete_passphrase(fp):
    get_container().certificate_service.delete_passphrase(fp)
    return success("Passphrase removed")


# -- files --------------------------------------------------------------------


@certificates_bp.route("/certificates/<fp>/files", methods=["GET"])
@certificate_route
def list_files(fp):
    return jsonify({"files": get_container().certificate_service.files(fp)})


@certificates_bp.route("/certificates/<fp>/download/<form>", methods=["GET"])
@certificate_route
def download(fp, form):
    """GET /certificates/{fp}/download/{form}: one artifact."""
    data, filename, mimetype = get_container().certificate_service.download(fp, form)
    return _send(data, filename, mimetype)


@certificates_bp.route("/certificates/<fp>/download", methods=["GET"])
@certificate_route
def download_zip(fp):
    """GET /certificates/{fp}/download: every artifact as a zip."""
    data, filename = get_container().certificate_service.zip(fp)
    return _send(data, filename, "application/zip")


@certificates_bp.route("/certificates/<fp>/convert", methods=["POST"])
@certificate_route
def convert(fp):
    """POST /certificates/{fp}/convert: ``{format, password?}``."""
    record, form = get_container().certificate_service.convert(fp, json_body())
    return success(
        f"Converted to {form.value}",
        format=form.value,
        certificate=_serialize(record, detail=True),
    )


# -- history and backups ------------------------------------------------------


@certificates_bp.route("/certificates/<fp>/history", methods=["GET"])
@certificate_route
def history(fp):
    record = get_container().certificate_service.history(fp)
    return jsonify(
        {
            "fingerprint": record.fingerprint,
            "versionHistory": [serialize_version(v) for v in reversed(record.version_history)],
        },
    )


@certificates_bp.route("/certificates/<fp>/backups", methods=["GET"])
@certificate_route
def list_backups(fp):
    record = get_container().certificate_service.get(fp)
    return jsonify({"backups": [serialize_version(b) for b in reversed(record.backups)]})


@certificates_bp.route("/certificates/<fp>/backups", methods=["POST"])
@certificate_route
def create_backup(fp):
    """POST /certificates/{fp}/backups: ``{description?}``."""
    body = json_body(required=False)
    entry = get_container().certificate_service.create_backup(fp, str(body.get("description") or ""))
    return success("Backup created", 201, backup=serialize_version(entry))


@certificates_bp.route("/certificates/<fp>/backups/<snapshot_id>/download", methods=["GET"])
@certificate_route
def download_backup(fp, snapshot_id):
    data, filename = get_container().certificate_service.zip(fp, snapshot_id)
    return _send(data, filename, "application/zip")


@certificates_bp.route("/certificates/<fp>/backups/<snapshot_id>/restore", methods=["POST"])
@certificate_route
def restore_backup(fp, snapshot_id):
    """POST .../backups/{id}/restore: the current version is archived first."""
    record = get_container().certificate_service.restore_backup(fp, snapshot_id)
    return success(f"Restored {snapshot_id}", certificate=_serialize(record, detail=True))


@certificates_bp.route("/certificates/<fp>/backups/<snapshot_id>", methods=["DELETE"])
@certificate_route
def delete_backup(fp, snapshot_id):
    get_container().certificate_service.delete_backup(fp, snapshot_id)
    return success(f"Backup {snapshot_id} deleted")
