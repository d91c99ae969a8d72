"""Prometheus text exposition of the realtime counters and gauges."""

from fastapi import APIRouter, Depends, Response

from anatomia.realtime import ConnectionRegistry, get_registry
from app.monitoring.metrics import realtime_connected_members
from app.monitoring.registry import registry

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=Response)
def export_metrics(connections: ConnectionRegistry = Depends(get_registry)) -> Response:
    realtime_connected_members.set(len(connections.connected_member_ids()))
    return Response(content=registry.render(), media_type=PROMETHEUS_CONTENT_TYPE)
