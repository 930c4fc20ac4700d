"""LayerCatalog — static registry of queryable layers and their groupings.

The catalog is read once at startup (from a JSON file or the bundled
default) and is read-only afterwards. Every layer belongs to exactly one
group; layers without an explicit group get an implicit single-layer group
whose id is the layer name.

JSON shape::

    {
      "layers": [{"name": "ws:layer", "geometry_kind": "polygon",
                  "crs": "EPSG:4326", "display_name": "...", "group": "g1"}],
      "groups": [{"group_id": "g1", "display_name": "...", "names": ["ws:layer"]}]
    }
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Iterable

from loguru import logger

from layersync.wfs.predicates import normalize_geometry_kind


@dataclass(frozen=True)
class LayerDescriptor:
    """A remotely-queryable layer.

    Attributes:
        name: Qualified type name (``workspace:layer``).
        geometry_kind: ``point``, ``line``, ``polygon`` or a multi-part variant.
        crs: Native coordinate reference of the layer.
        display_name: Human-readable name.
        group: Group id this layer is toggled with.
    """

    name: str
    geometry_kind: str
    crs: str = "EPSG:4326"
    display_name: str = ""
    group: str = ""

    @property
    def label(self) -> str:
        return self.display_name or self.name.split(":", 1)[-1]


@dataclass(frozen=True)
class LayerGroup:
    """One or more layer names toggled together as one logical unit."""

    group_id: str
    names: tuple[str, ...]
    display_name: str = ""

    def __contains__(self, name: object) -> bool:
        return name in self.names


class LayerCatalog:
    """Read-only lookup of layer descriptors and groups."""

    def __init__(self, layers: Iterable[LayerDescriptor], groups: Iterable[LayerGroup] = ()) -> None:
        self._layers: dict[str, LayerDescriptor] = {}
        for layer in layers:
            normalize_geometry_kind(layer.geometry_kind)
            if layer.name in self._layers:
                raise ValueError(f"Duplicate layer in catalog: {layer.name}")
            self._layers[layer.name] = layer

        self._groups: dict[str, LayerGroup] = {}
        self._group_of: dict[str, str] = {}
        for group in groups:
            self._add_group(group)

        for layer in self._layers.values():
            if layer.name in self._group_of:
                continue
            if layer.group and layer.group in self._groups:
                raise ValueError(
                    f"Layer {layer.name} declares group {layer.group!r} but is not listed in it"
                )
            if layer.group:
                # Group only declared on the layers: build it in catalog order
                members = tuple(l.name for l in self._layers.values() if l.group == layer.group)
                self._add_group(LayerGroup(layer.group, members, layer.group))
            else:
                self._add_group(LayerGroup(layer.name, (layer.name,), layer.label))

    def _add_group(self, group: LayerGroup) -> None:
        if group.group_id in self._groups:
            raise ValueError(f"Duplicate group in catalog: {group.group_id}")
        if not group.names:
            raise ValueError(f"Group {group.group_id} has no layers")
        for name in group.names:
            if name not in self._layers:
                raise ValueError(f"Group {group.group_id} references unknown layer {name}")
            if name in self._group_of:
                raise ValueError(f"Layer {name} is in two groups")
            self._group_of[name] = group.group_id
        self._groups[group.group_id] = group

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict) -> "LayerCatalog":
        layers = [
            LayerDescriptor(
                name=raw["name"],
                geometry_kind=raw["geometry_kind"],
                crs=raw.get("crs", "EPSG:4326"),
                display_name=raw.get("display_name", ""),
                group=raw.get("group", ""),
            )
            for raw in data.get("layers", [])
        ]
        groups = [
            LayerGroup(
                group_id=raw["group_id"],
                names=tuple(raw["names"]),
                display_name=raw.get("display_name", ""),
            )
            for raw in data.get("groups", [])
        ]
        return cls(layers, groups)

    @classmethod
    def from_file(cls, path: Path | str) -> "LayerCatalog":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        catalog = cls.from_dict(data)
        logger.info(f"Loaded layer catalog from {path}: {len(catalog)} layers")
        return catalog

    @classmethod
    def default(cls) -> "LayerCatalog":
        """The catalog bundled with the package."""
        text = resources.files("layersync.data").joinpath("catalog.json").read_text(encoding="utf-8")
        return cls.from_dict(json.loads(text))

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> LayerDescriptor | None:
        return self._layers.get(name)

    def group(self, group_id: str) -> LayerGroup | None:
        return self._groups.get(group_id)

    def group_of(self, name: str) -> LayerGroup | None:
        group_id = self._group_of.get(name)
        return self._groups.get(group_id) if group_id else None

    def resolve_group(self, target: LayerGroup | str | Iterable[str]) -> LayerGroup:
        """Turn a toggle target into a LayerGroup.

        Accepts a LayerGroup, a group id, a single layer name (resolved to
        its catalog group) or an explicit list of layer names (an ad hoc
        group; names need not be in the catalog).

        Raises:
            KeyError: for a string that is neither a group id nor a layer.
            ValueError: for an empty list.
        """
        if isinstance(target, LayerGroup):
            return target
        if isinstance(target, str):
            if target in self._groups:
                return self._groups[target]
            group = self.group_of(target)
            if group is not None:
                return group
            raise KeyError(f"Unknown layer or group: {target}")

        names = tuple(dict.fromkeys(target))
        if not names:
            raise ValueError("Layer group must contain at least one layer name")
        if len(names) == 1 and names[0] in self._group_of:
            return self.group_of(names[0])
        return LayerGroup(group_id="+".join(names), names=names)

    def names(self) -> list[str]:
        return list(self._layers)

    def layers(self) -> list[LayerDescriptor]:
        return list(self._layers.values())

    def groups(self) -> list[LayerGroup]:
        return list(self._groups.values())

    def __contains__(self, name: object) -> bool:
        return name in self._layers

    def __len__(self) -> int:
        return len(self._layers)
