"""In-memory store for one project's backbone.

The store owns the live `ProjectBackbone` and the baseline `UpstreamSnapshot`
the current scenes were generated against. Every change goes through a named
operation; readers get deep copies.

Two kinds of writers exist:

* user operations (entity CRUD, meta edits, scene ordering) which pass through
  the mutation guard and notify upstream-edit listeners;
* generation commits (`commit_generation`, `commit_regeneration`) which replace
  content wholesale and reset the baseline.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import ValidationError

from storygen.backbone.models import (
    Character,
    EntityKind,
    Item,
    Location,
    ProjectBackbone,
    ProjectMeta,
    Scene,
    UpstreamSnapshot,
)
from storygen.core.exceptions import (
    DuplicateEntityError,
    EntityNotFoundError,
    SchemaValidationError,
)
from storygen.regeneration.detector import detect_changes

logger = logging.getLogger(__name__)

ENTITY_MODELS: dict[EntityKind, type[Character] | type[Location] | type[Item]] = {
    EntityKind.CHARACTER: Character,
    EntityKind.LOCATION: Location,
    EntityKind.ITEM: Item,
}

UpstreamListener = Callable[[EntityKind, str], None]
MutationGuard = Callable[[str], None]


def next_entity_id(prefix: str, used: Iterable[str]) -> str:
    """Allocate `{prefix}_{n}` with n above every numeric suffix already used."""
    pattern = re.compile(rf"^{re.escape(prefix)}_(\d+)$")
    highest = 0
    for entity_id in used:
        match = pattern.match(entity_id or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{prefix}_{highest + 1}"


def reindex_scenes(scenes: list[Scene]) -> list[Scene]:
    """Renumber scenes 1..N (and their shots 1..M) in list order."""
    for position, scene in enumerate(scenes, start=1):
        scene.scene_index = position
        for shot_position, shot in enumerate(scene.shots, start=1):
            shot.shot_index = shot_position
    return scenes


class BackboneStore:
    def __init__(
        self,
        backbone: ProjectBackbone | None = None,
        baseline: UpstreamSnapshot | None = None,
    ):
        self._lock = threading.RLock()
        self._backbone = backbone.model_copy(deep=True) if backbone else ProjectBackbone()
        reindex_scenes(self._backbone.scenes)
        self._baseline = baseline.model_copy(deep=True) if baseline else None
        if self._baseline is None and self._backbone.scenes:
            self._baseline = self._backbone.upstream()
        self._version = 0
        self._listeners: list[UpstreamListener] = []
        self._guard: MutationGuard | None = None

    # -- read side -------------------------------------------------------

    @property
    def project_id(self) -> str:
        return self._backbone.project_id

    @property
    def version(self) -> int:
        return self._version

    @property
    def backbone(self) -> ProjectBackbone:
        with self._lock:
            return self._backbone.model_copy(deep=True)

    @property
    def baseline(self) -> UpstreamSnapshot | None:
        with self._lock:
            return self._baseline.model_copy(deep=True) if self._baseline else None

    def snapshot(self) -> UpstreamSnapshot:
        """Deep copy of the live characters, locations and items."""
        with self._lock:
            return self._backbone.upstream()

    def is_stale(self) -> bool:
        with self._lock:
            return detect_changes(self._baseline, self._backbone)

    def get_entity(self, kind: EntityKind, entity_id: str):
        with self._lock:
            return self._find(kind, entity_id).model_copy(deep=True)

    def get_scene(self, scene_id: str) -> Scene:
        with self._lock:
            return self._find_scene(scene_id).model_copy(deep=True)

    # -- hooks -----------------------------------------------------------

    def add_upstream_listener(self, listener: UpstreamListener) -> None:
        self._listeners.append(listener)

    def set_mutation_guard(self, guard: MutationGuard | None) -> None:
        """Install a callable that raises when user mutations must be rejected."""
        self._guard = guard

    def _check_guard(self, operation: str) -> None:
        if self._guard is not None:
            self._guard(operation)

    def _notify(self, kind: EntityKind, entity_id: str) -> None:
        for listener in list(self._listeners):
            listener(kind, entity_id)

    def _bump(self, operation: str, **extra: Any) -> None:
        self._version += 1
        logger.debug(
            "backbone mutated",
            extra={"operation": operation, "version": self._version, **extra},
        )

    # -- ids -------------------------------------------------------------

    def _used_ids(self, kind: EntityKind) -> set[str]:
        live = {e.id for e in self._backbone.collection(kind)}
        return live | set(self._backbone.retired_ids)

    def allocate_id(self, kind: EntityKind) -> str:
        with self._lock:
            return next_entity_id(kind.id_prefix, self._used_ids(kind))

    def _find(self, kind: EntityKind, entity_id: str):
        for entity in self._backbone.collection(kind):
            if entity.id == entity_id:
                return entity
        raise EntityNotFoundError(kind.value, entity_id)

    def _find_scene(self, scene_id: str) -> Scene:
        for scene in self._backbone.scenes:
            if scene.id == scene_id:
                return scene
        raise EntityNotFoundError("scene", scene_id)

    # -- upstream entity operations ----------------------------------------

    def add_entity(self, kind: EntityKind, data: dict[str, Any]):
        """Add a character, location or item. Missing ids are allocated."""
        with self._lock:
            self._check_guard(f"add_{kind.value}")
            payload = dict(data)
            entity_id = payload.get("id") or next_entity_id(kind.id_prefix, self._used_ids(kind))
            if entity_id in self._used_ids(kind):
                raise DuplicateEntityError(
                    f"{kind.value} id '{entity_id}' is already used or retired",
                    detail=f"{kind.value} id already in use",
                )
            payload["id"] = entity_id
            entity = ENTITY_MODELS[kind].model_validate(payload)
            self._backbone.collection(kind).append(entity)
            self._bump(f"add_{kind.value}", entity_id=entity_id)
            result = entity.model_copy(deep=True)
        self._notify(kind, entity_id)
        return result

    def update_entity(self, kind: EntityKind, entity_id: str, changes: dict[str, Any]):
        """Apply a partial update. The id itself cannot change."""
        with self._lock:
            self._check_guard(f"update_{kind.value}")
            entity = self._find(kind, entity_id)
            merged = entity.model_dump()
            for key, value in changes.items():
                if key == "id":
                    continue
                if isinstance(value, dict) and isinstance(merged.get(key), dict):
                    merged[key] = {**merged[key], **value}
                else:
                    merged[key] = value
            updated = ENTITY_MODELS[kind].model_validate(merged)
            collection = self._backbone.collection(kind)
            collection[collection.index(entity)] = updated
            self._bump(f"update_{kind.value}", entity_id=entity_id)
            result = updated.model_copy(deep=True)
        self._notify(kind, entity_id)
        return result

    def remove_entity(self, kind: EntityKind, entity_id: str) -> None:
        """Remove an entity and retire its id.

        Scenes that reference it keep the dangling reference until the next
        regeneration resolves it.
        """
        with self._lock:
            self._check_guard(f"remove_{kind.value}")
            entity = self._find(kind, entity_id)
            self._backbone.collection(kind).remove(entity)
            if entity_id not in self._backbone.retired_ids:
                self._backbone.retired_ids.append(entity_id)
            self._bump(f"remove_{kind.value}", entity_id=entity_id)
        self._notify(kind, entity_id)

    def set_reference_image(self, kind: EntityKind, entity_id: str, uri: str):
        return self.update_entity(kind, entity_id, {"ref_image_url": uri})

    def update_meta(self, changes: dict[str, Any]) -> ProjectMeta:
        with self._lock:
            self._check_guard("update_meta")
            merged = {**self._backbone.meta.model_dump(), **changes}
            self._backbone.meta = ProjectMeta.model_validate(merged)
            self._bump("update_meta")
            return self._backbone.meta.model_copy(deep=True)

    # -- scene presentation operations -------------------------------------

    def insert_scene(self, scene: Scene | dict[str, Any], position: int | None = None) -> Scene:
        """Insert a scene before the 1-based `position` (append when None)."""
        with self._lock:
            self._check_guard("insert_scene")
            new_scene = Scene.model_validate(scene) if isinstance(scene, dict) else scene.model_copy(deep=True)
            used = {s.id for s in self._backbone.scenes}
            if not new_scene.id or new_scene.id in used:
                new_scene.id = next_entity_id("scene", used)
            scenes = self._backbone.scenes
            index = len(scenes) if position is None else max(0, min(position - 1, len(scenes)))
            scenes.insert(index, new_scene)
            reindex_scenes(scenes)
            self._bump("insert_scene", scene=new_scene.id)
            return new_scene.model_copy(deep=True)

    def delete_scene(self, scene_id: str) -> None:
        with self._lock:
            self._check_guard("delete_scene")
            scene = self._find_scene(scene_id)
            self._backbone.scenes.remove(scene)
            reindex_scenes(self._backbone.scenes)
            self._bump("delete_scene", scene=scene_id)

    def move_scene(self, scene_id: str, position: int) -> None:
        """Move a scene to the 1-based `position`, clamped to the valid range."""
        with self._lock:
            self._check_guard("move_scene")
            scenes = self._backbone.scenes
            scene = self._find_scene(scene_id)
            scenes.remove(scene)
            scenes.insert(max(0, min(position - 1, len(scenes))), scene)
            reindex_scenes(scenes)
            self._bump("move_scene", scene=scene_id)

    def reorder_scenes(self, ordered_ids: list[str]) -> None:
        """Reorder scenes; `ordered_ids` must be a permutation of the current ids."""
        with self._lock:
            self._check_guard("reorder_scenes")
            by_id = {s.id: s for s in self._backbone.scenes}
            if sorted(ordered_ids) != sorted(by_id) or len(set(ordered_ids)) != len(ordered_ids):
                raise ValueError("reorder must list every scene id exactly once")
            self._backbone.scenes = reindex_scenes([by_id[i] for i in ordered_ids])
            self._bump("reorder_scenes")

    # -- generation commits ------------------------------------------------

    def commit_generation(self, backbone: ProjectBackbone) -> None:
        """Replace the whole document after a successful pipeline run and take the baseline."""
        with self._lock:
            committed = backbone.model_copy(deep=True)
            committed.project_id = self._backbone.project_id
            committed.retired_ids = sorted(set(committed.retired_ids) | set(self._backbone.retired_ids))
            reindex_scenes(committed.scenes)
            self._backbone = committed
            self._baseline = committed.upstream()
            self._bump("commit_generation", scenes=len(committed.scenes))

    def commit_regeneration(self, scenes: list[Scene], upstream_used: UpstreamSnapshot) -> None:
        """Swap the scene subtree wholesale and reset the baseline to `upstream_used`."""
        with self._lock:
            new_scenes = reindex_scenes([s.model_copy(deep=True) for s in scenes])
            try:
                candidate = self._backbone.model_copy(update={"scenes": new_scenes}, deep=True)
                ProjectBackbone.model_validate(candidate.model_dump())
            except ValidationError as exc:
                raise SchemaValidationError(
                    "regenerated scenes do not fit the backbone",
                    stage="regeneration",
                    errors=[str(e) for e in exc.errors()],
                ) from exc
            self._backbone.scenes = new_scenes
            self._baseline = upstream_used.model_copy(deep=True)
            self._bump("commit_regeneration", scenes=len(new_scenes))

    def replace(self, backbone: ProjectBackbone, baseline: UpstreamSnapshot | None) -> None:
        """Replace document and baseline together (project import)."""
        with self._lock:
            self._check_guard("import")
            self._backbone = backbone.model_copy(deep=True)
            reindex_scenes(self._backbone.scenes)
            self._baseline = baseline.model_copy(deep=True) if baseline else None
            if self._baseline is None and self._backbone.scenes:
                self._baseline = self._backbone.upstream()
            self._bump("replace")
