"""Scene duration review.

Dialogue is read at 2.5 words per second and every action line costs three
seconds. A scene is rejected when its estimate runs over its target by more
than the configured tolerance; short scenes are accepted.
"""

from __future__ import annotations

from dataclasses import dataclass

from storygen.backbone.models import Scene

WORDS_PER_SECOND = 2.5
SECONDS_PER_ACTION_LINE = 3.0


@dataclass(frozen=True)
class SceneReview:
    scene_id: str
    estimated_duration_sec: float
    target_duration_sec: float
    approved: bool
    feedback: str


def estimate_scene_duration(scene: Scene) -> float:
    words = 0
    action_lines = 0
    for line in scene.script_content.lines:
        if line.type == "dialogue":
            words += len(line.content.split())
        elif line.type == "action":
            action_lines += 1
    return words / WORDS_PER_SECOND + action_lines * SECONDS_PER_ACTION_LINE


def review_scene(scene: Scene, target_duration_sec: float, tolerance: float = 0.2) -> SceneReview:
    estimated = estimate_scene_duration(scene)
    max_duration = target_duration_sec * (1 + tolerance)
    if estimated > max_duration:
        return SceneReview(
            scene_id=scene.id,
            estimated_duration_sec=estimated,
            target_duration_sec=target_duration_sec,
            approved=False,
            feedback=(
                f"Scene is too long: estimated {estimated:.1f}s, target {target_duration_sec:g}s "
                f"(max {max_duration:.1f}s). Reduce dialogue or action."
            ),
        )
    return SceneReview(
        scene_id=scene.id,
        estimated_duration_sec=estimated,
        target_duration_sec=target_duration_sec,
        approved=True,
        feedback=f"Scene duration is valid ({estimated:.1f}s).",
    )


def review_scenes(scenes: list[Scene], tolerance: float = 0.2) -> list[SceneReview]:
    """Review every scene against its own estimated_duration_sec.

    Scenes without a positive target are skipped.
    """
    return [
        review_scene(scene, scene.estimated_duration_sec, tolerance)
        for scene in scenes
        if scene.estimated_duration_sec > 0
    ]
