from __future__ import annotations

from dataclasses import asdict

from flask import current_app, jsonify, request
from flask_login import current_user, login_required

from lifeline.core.auth import user_to_dict
from lifeline.core.errors import LifelineError, ValidationError
from lifeline.core.pagination import normalize_pagination
from lifeline.core.permissions import require_role
from lifeline.lines import lines_bp
from lifeline.lines.accidents import (
    ACCIDENT_SORT_FIELDS,
    accident_by_id,
    accident_statistics,
    accident_to_dict,
    delete_accident,
    list_accidents,
    recent_accidents,
    record_accidents,
    report_accident,
    update_accident,
)
from lifeline.lines.alerts import (
    ALERT_SORT_FIELDS,
    alert_by_id,
    alert_to_dict,
    alerts_for_record,
    alerts_summary,
    list_alerts,
    mark_alert_read,
    mark_all_alerts_read,
    run_manual_alert_scan,
    unread_alert_count,
)
from lifeline.lines.authorization import (
    authorization_to_dict,
    check_authorization_needed,
    cleanup_expired_codes,
    generate_code,
    pending_requests,
    request_authorization,
    validate_code,
)
from lifeline.lines.maintenance import (
    delete_maintenance,
    maintenance_by_id,
    maintenance_to_dict,
    record_maintenances,
    register_maintenance,
)
from lifeline.lines.movements import (
    MOVEMENT_SORT_FIELDS,
    TrackingContext,
    list_movements,
    movement_statistics,
    movement_to_dict,
    record_movements,
)
from lifeline.lines.relationships import (
    can_be_parent,
    child_relationships,
    create_relationship,
    parent_relationship,
    relationship_to_dict,
)
from lifeline.lines.services import (
    RECORD_SORT_FIELDS,
    change_record_status,
    create_record,
    delete_record,
    expired_records,
    expiring_records,
    list_records,
    record_by_code,
    record_by_id,
    record_statistics,
    record_to_dict,
    records_by_status,
    refresh_record_statuses,
    update_record,
)
from lifeline.lines.status import classify, thresholds_from_config


@lines_bp.errorhandler(LifelineError)
def handle_lifeline_error(exc: LifelineError):
    return jsonify({"error": exc.message}), exc.status_code


def _tracking_context() -> TrackingContext:
    return TrackingContext(
        user_id=current_user.id,
        username=current_user.username,
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Se esperaba un cuerpo JSON")
    return data


def _pagination(allowed: frozenset[str], default_sort: str = "id", default_order: str = "ASC"):
    return normalize_pagination(
        request.args,
        allowed_sort=allowed,
        default_sort=default_sort,
        default_order=default_order,
        default_limit=current_app.config.get("DEFAULT_PAGE_SIZE", 10),
        max_limit=current_app.config.get("MAX_PAGE_SIZE", 100),
    )


# Records


@lines_bp.get("/registros")
@login_required
def records_index():
    return jsonify(list_records(request.args.to_dict(), _pagination(RECORD_SORT_FIELDS)))


@lines_bp.post("/registros")
@login_required
def records_create():
    record = create_record(_json_body(), _tracking_context())
    return jsonify(record_to_dict(record)), 201


@lines_bp.get("/registros/<int:record_id>")
@login_required
def records_detail(record_id: int):
    return jsonify(record_to_dict(record_by_id(record_id)))


@lines_bp.get("/registros/codigo/<codigo>")
@login_required
def records_by_code(codigo: str):
    return jsonify(record_to_dict(record_by_code(codigo)))


@lines_bp.patch("/registros/<int:record_id>")
@login_required
def records_update(record_id: int):
    record = update_record(record_id, _json_body(), _tracking_context())
    return jsonify(record_to_dict(record))


@lines_bp.delete("/registros/<int:record_id>")
@login_required
def records_delete(record_id: int):
    data = request.get_json(silent=True) or {}
    result = delete_record(record_id, _tracking_context(), data.get("authorization_code"))
    return jsonify(asdict(result))


@lines_bp.get("/registros/estado/<estado>")
@login_required
def records_with_status(estado: str):
    return jsonify([record_to_dict(record) for record in records_by_status(estado)])


@lines_bp.get("/registros/por-vencer")
@login_required
def records_expiring():
    days = request.args.get("days", default=30, type=int)
    return jsonify([record_to_dict(record) for record in expiring_records(days)])


@lines_bp.get("/registros/vencidos")
@login_required
def records_expired():
    return jsonify([record_to_dict(record) for record in expired_records()])


@lines_bp.get("/registros/estadisticas")
@login_required
def records_stats():
    return jsonify(record_statistics())


@lines_bp.get("/registros/<int:record_id>/estado")
@login_required
def records_status_info(record_id: int):
    record = record_by_id(record_id)
    info = classify(record.fecha_vencimiento, thresholds=thresholds_from_config(current_app.config))
    return jsonify(
        {
            "estado_actual": record.estado_actual.value,
            "status": info.status.value,
            "days_remaining": None if info.days_remaining == float("inf") else int(info.days_remaining),
            "message": info.message,
            "priority": info.priority,
        }
    )


@lines_bp.post("/registros/<int:record_id>/estado")
@login_required
def records_change_status(record_id: int):
    data = _json_body()
    record = change_record_status(
        record_id,
        data.get("estado_actual"),
        data.get("observacion"),
        _tracking_context(),
    )
    return jsonify(record_to_dict(record))


@lines_bp.post("/registros/estados/actualizar")
@login_required
@require_role("admin")
def records_refresh_statuses():
    result = refresh_record_statuses(force=True)
    return jsonify(asdict(result))


# Maintenance


@lines_bp.get("/registros/<int:record_id>/mantenimientos")
@login_required
def maintenance_index(record_id: int):
    return jsonify([maintenance_to_dict(event) for event in record_maintenances(record_id)])


@lines_bp.post("/registros/<int:record_id>/mantenimientos")
@login_required
def maintenance_create(record_id: int):
    event = register_maintenance(record_id, _json_body(), _tracking_context())
    return jsonify(maintenance_to_dict(event)), 201


@lines_bp.get("/mantenimientos/<int:maintenance_id>")
@login_required
def maintenance_detail(maintenance_id: int):
    return jsonify(maintenance_to_dict(maintenance_by_id(maintenance_id)))


@lines_bp.delete("/mantenimientos/<int:maintenance_id>")
@login_required
@require_role("admin")
def maintenance_delete(maintenance_id: int):
    delete_maintenance(maintenance_id)
    return jsonify({"deleted": maintenance_id})


# Accidents


@lines_bp.get("/accidentes")
@login_required
def accidents_index():
    params = _pagination(ACCIDENT_SORT_FIELDS, default_sort="created_at", default_order="DESC")
    return jsonify(list_accidents(request.args.to_dict(), params))


@lines_bp.get("/accidentes/estadisticas")
@login_required
def accidents_stats():
    return jsonify(accident_statistics())


@lines_bp.get("/accidentes/recientes")
@login_required
def accidents_recent():
    days = request.args.get("days", default=30, type=int)
    return jsonify([accident_to_dict(accident) for accident in recent_accidents(days)])


@lines_bp.get("/accidentes/<int:accident_id>")
@login_required
def accidents_detail(accident_id: int):
    return jsonify(accident_to_dict(accident_by_id(accident_id)))


@lines_bp.patch("/accidentes/<int:accident_id>")
@login_required
def accidents_update(accident_id: int):
    return jsonify(accident_to_dict(update_accident(accident_id, _json_body())))


@lines_bp.delete("/accidentes/<int:accident_id>")
@login_required
@require_role("admin")
def accidents_delete(accident_id: int):
    delete_accident(accident_id)
    return jsonify({"deleted": accident_id})


@lines_bp.get("/registros/<int:record_id>/accidentes")
@login_required
def record_accidents_index(record_id: int):
    return jsonify([accident_to_dict(accident) for accident in record_accidents(record_id)])


@lines_bp.post("/registros/<int:record_id>/accidentes")
@login_required
def record_accidents_create(record_id: int):
    accident = report_accident(record_id, _json_body(), _tracking_context())
    return jsonify(accident_to_dict(accident)), 201


# Movements


@lines_bp.get("/registros/<int:record_id>/movimientos")
@login_required
def record_history(record_id: int):
    return jsonify([movement_to_dict(entry) for entry in record_movements(record_id)])


@lines_bp.get("/movimientos")
@login_required
def movements_index():
    params = _pagination(MOVEMENT_SORT_FIELDS, default_sort="action_date", default_order="DESC")
    return jsonify(list_movements(request.args.to_dict(), params))


@lines_bp.get("/movimientos/estadisticas")
@login_required
@require_role("admin")
def movements_stats():
    return jsonify(movement_statistics())


# Alerts


@lines_bp.get("/alertas")
@login_required
def alerts_index():
    params = _pagination(ALERT_SORT_FIELDS, default_sort="created_at", default_order="DESC")
    return jsonify(list_alerts(request.args.to_dict(), params))


@lines_bp.get("/alertas/resumen")
@login_required
def alerts_dashboard():
    return jsonify(alerts_summary())


@lines_bp.get("/alertas/no-leidas")
@login_required
def alerts_unread():
    return jsonify({"count": unread_alert_count()})


@lines_bp.get("/alertas/<int:alert_id>")
@login_required
def alerts_detail(alert_id: int):
    return jsonify(alert_to_dict(alert_by_id(alert_id)))


@lines_bp.patch("/alertas/<int:alert_id>/leida")
@login_required
def alerts_mark_read(alert_id: int):
    return jsonify(alert_to_dict(mark_alert_read(alert_id)))


@lines_bp.post("/alertas/leidas")
@login_required
def alerts_mark_all_read():
    return jsonify({"updated": mark_all_alerts_read()})


@lines_bp.post("/alertas/generar")
@login_required
@require_role("admin")
def alerts_generate():
    result = run_manual_alert_scan()
    return jsonify(
        {
            "evaluated": result.evaluated,
            "generated": result.generated,
            "alerts": [alert_to_dict(alert) for alert in result.alerts],
        }
    )


@lines_bp.get("/registros/<int:record_id>/alertas")
@login_required
def record_alerts(record_id: int):
    return jsonify([alert_to_dict(alert) for alert in alerts_for_record(record_id)])


# Relationships


@lines_bp.post("/relaciones")
@login_required
def relationships_create():
    data = _json_body()
    children = data.get("child_records")
    if not isinstance(children, list):
        raise ValidationError("child_records debe ser una lista")
    try:
        parent_id = int(data.get("parent_record_id"))
    except (TypeError, ValueError) as exc:
        raise ValidationError("parent_record_id invalido") from exc
    result = create_relationship(
        parent_id,
        data.get("relationship_type") or "",
        children,
        data.get("notes"),
        _tracking_context(),
    )
    return (
        jsonify(
            {
                "parent_record": {
                    "id": result.parent.id,
                    "codigo": result.parent.codigo,
                    "new_status": result.parent.estado_actual.value,
                },
                "child_records": [{"id": child.id, "codigo": child.codigo} for child in result.children],
                "relationships": [relationship_to_dict(link) for link in result.relationships],
                "message": result.message,
            }
        ),
        201,
    )


@lines_bp.get("/registros/<int:record_id>/derivadas")
@login_required
def relationships_children(record_id: int):
    return jsonify([relationship_to_dict(link) for link in child_relationships(record_id)])


@lines_bp.get("/registros/<int:record_id>/origen")
@login_required
def relationships_parent(record_id: int):
    link = parent_relationship(record_id)
    return jsonify(relationship_to_dict(link) if link else None)


@lines_bp.get("/registros/<int:record_id>/puede-derivar")
@login_required
def relationships_can_be_parent(record_id: int):
    return jsonify(asdict(can_be_parent(record_id)))


# Deletion authorization


@lines_bp.get("/registros/<int:record_id>/autorizacion")
@login_required
def authorization_check(record_id: int):
    return jsonify(asdict(check_authorization_needed(record_id, current_user.id)))


@lines_bp.post("/autorizaciones")
@login_required
def authorization_request():
    data = _json_body()
    try:
        record_id = int(data.get("record_id"))
    except (TypeError, ValueError) as exc:
        raise ValidationError("record_id invalido") from exc
    row = request_authorization(record_id, current_user.id, data.get("justification"), request.remote_addr)
    return jsonify(authorization_to_dict(row)), 201


@lines_bp.post("/autorizaciones/<int:request_id>/codigo")
@login_required
@require_role("admin")
def authorization_generate(request_id: int):
    row = generate_code(request_id, current_user.id)
    return jsonify(
        {
            "code": row.code,
            "expires_in_minutes": current_app.config.get("AUTH_CODE_EXPIRY_MINUTES", 10),
            "authorized_by": user_to_dict(current_user),
        }
    )


@lines_bp.post("/autorizaciones/validar")
@login_required
def authorization_validate():
    data = _json_body()
    try:
        record_id = int(data.get("record_id"))
    except (TypeError, ValueError) as exc:
        raise ValidationError("record_id invalido") from exc
    result = validate_code(record_id, data.get("authorization_code") or "", current_user.id)
    return jsonify(asdict(result))


@lines_bp.get("/autorizaciones/pendientes")
@login_required
@require_role("admin")
def authorization_pending():
    return jsonify([authorization_to_dict(row) for row in pending_requests()])


@lines_bp.post("/autorizaciones/limpiar")
@login_required
@require_role("admin")
def authorization_cleanup():
    return jsonify({"expired": cleanup_expired_codes()})
