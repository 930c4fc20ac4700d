"""Layer, timeline and click-query endpoints over the SyncEngine."""

from __future__ import annotations

from typing import Optional, Union

from fastapi import APIRouter, HTTPException, Query, Request
from loguru import logger
from pydantic import BaseModel, Field

from layersync.timeline.keys import normalize_temporal_key
from layersync.wfs.errors import QueryError

router = APIRouter(prefix="/api", tags=["layers"])


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class ToggleRequest(BaseModel):
    """Turn a layer group on or off."""
    group: Union[str, list[str]]
    active: bool = True
    temporal_key: Optional[str] = None


class TimelineRequest(BaseModel):
    """Move the time cursor."""
    key: str


class PrefetchRequest(BaseModel):
    key: Optional[str] = None


class PointQueryRequest(BaseModel):
    """Identify features at a clicked coordinate (EPSG:4326)."""
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    layers: Optional[list[str]] = None


class DownloadResponse(BaseModel):
    layer_name: str
    format: str
    url: str


def _engine(request: Request):
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------

@router.get("/layers/catalog")
async def get_catalog(request: Request):
    """Queryable layers and the groups they are toggled in."""
    engine = _engine(request)
    return {
        "layers": [
            {
                "name": d.name,
                "display_name": d.label,
                "geometry_kind": d.geometry_kind,
                "crs": d.crs,
                "group": engine.catalog.group_of(d.name).group_id,
            }
            for d in engine.catalog.layers()
        ],
        "groups": [
            {"group_id": g.group_id, "display_name": g.display_name, "names": list(g.names)}
            for g in engine.catalog.groups()
        ],
        "temporal_layer": engine.temporal.layer_name,
    }


@router.get("/layers")
async def get_layers(request: Request, features: bool = Query(True)):
    """Every active, loading or failed layer with its version."""
    return _engine(request).layers.to_dict(include_features=features)


@router.post("/layers/toggle")
async def toggle_layers(body: ToggleRequest, request: Request):
    engine = _engine(request)
    try:
        report = await engine.toggle(body.group, body.active, body.temporal_key)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e).strip("'\""))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return report.to_dict()


@router.get("/layers/{layer_name}/download", response_model=DownloadResponse)
async def download_layer(
    layer_name: str,
    request: Request,
    format: str = Query("shape-zip"),
):
    """Bulk-export URL for a layer, filtered like the map shows it."""
    engine = _engine(request)
    if layer_name not in engine.catalog:
        raise HTTPException(status_code=404, detail=f"Unknown layer: {layer_name}")
    url = engine.download_url(layer_name, output_format=format)
    return DownloadResponse(layer_name=layer_name, format=format, url=url)


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------

def _timeline_state(engine) -> dict:
    return {
        **engine.index.to_dict(),
        "controller": engine.temporal.snapshot(),
        "cache": engine.temporal.cache_info(),
    }


@router.get("/timeline")
async def get_timeline(request: Request, refresh: bool = Query(False)):
    """Available temporal keys (loaded on first use) and controller state."""
    engine = _engine(request)
    if refresh or not engine.index.loaded:
        try:
            if refresh:
                await engine.index.refresh()
            else:
                await engine.load_timeline()
        except QueryError as e:
            logger.warning(f"Could not load temporal keys: {e}")
            raise HTTPException(status_code=502, detail=str(e))
    return _timeline_state(engine)


@router.post("/timeline")
async def set_timeline(body: TimelineRequest, request: Request):
    engine = _engine(request)
    if normalize_temporal_key(body.key) is None:
        raise HTTPException(status_code=400, detail=f"Invalid temporal key: {body.key!r}")
    if engine.index.loaded and not engine.index.is_valid(body.key):
        raise HTTPException(status_code=404, detail=f"Temporal key not available: {body.key}")
    engine.set_temporal_key(body.key)
    return _timeline_state(engine)


@router.post("/timeline/prefetch")
async def prefetch_timeline(body: PrefetchRequest, request: Request):
    """Warm the slice cache with the neighbors of a key (default: selected)."""
    engine = _engine(request)
    key = body.key or engine.temporal.current_key or engine.index.selected
    if key is None:
        raise HTTPException(status_code=400, detail="No temporal key selected")
    fetched = await engine.temporal.prefetch_adjacent(key, engine.index.keys)
    return {"key": normalize_temporal_key(key), "prefetched": fetched, "cache": engine.temporal.cache_info()}


@router.delete("/timeline/cache")
async def clear_timeline_cache(request: Request):
    engine = _engine(request)
    engine.temporal.clear_cache()
    return {"cleared": True, "cache": engine.temporal.cache_info()}


# ---------------------------------------------------------------------------
# Click queries
# ---------------------------------------------------------------------------

@router.post("/query/point")
async def query_point(body: PointQueryRequest, request: Request):
    """Features at a point across the active (or given) layers."""
    engine = _engine(request)
    result = await engine.query_at_point(body.lat, body.lng, body.layers)
    return result.to_dict()
