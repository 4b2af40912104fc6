"""Artifact store: typed, ordered artifact collections of the active project."""

from typing import Any, Dict, List, Optional

from src.config import settings
from src.domain.schema import (
    ARTIFACT_TYPES,
    MANDATORY_ROLES,
    USER_FEEDBACK_ROLE,
    Feature,
    Flow,
    Persona,
    Screen,
    StageName,
    Story,
    UpdateType,
    WireModel,
)

# Keys of the stage documents that hold artifact lists
ARTIFACT_KEYS: Dict[str, UpdateType] = {
    "personas": UpdateType.PERSONA,
    "features": UpdateType.FEATURE,
    "stories": UpdateType.STORY,
    "screens": UpdateType.SCREEN,
    "flows": UpdateType.FLOW,
}

# Artifact kind produced by each generating stage
STAGE_ARTIFACT_TYPE: Dict[StageName, UpdateType] = {
    StageName.USERS: UpdateType.PERSONA,
    StageName.FEATURES: UpdateType.FEATURE,
    StageName.STORIES: UpdateType.STORY,
    StageName.DESIGN: UpdateType.SCREEN,
}

LIST_KEY: Dict[UpdateType, str] = {value: key for key, value in ARTIFACT_KEYS.items()}


def normalize_artifact(update_type: UpdateType, data: Any, index: int) -> Optional[WireModel]:
    """Build a typed artifact from raw model output, None if data is not an object."""
    model = ARTIFACT_TYPES.get(update_type)
    if model is None or not isinstance(data, dict):
        return None
    return model.from_llm_response(data, index)


def artifact_key(item: WireModel) -> str:
    """Case-insensitive display name of an artifact, used for dedup."""
    for attr in ("name", "title"):
        value = getattr(item, attr, "")
        if value:
            return str(value).strip().lower()
    return ""


class ArtifactStore:
    """Ground truth for generated artifacts and per-stage inputs.

    Lists are mutated only through ``merge_at`` and ``replace``; positions
    are not guaranteed to match numeric ids.
    """

    def __init__(self) -> None:
        self.idea: str = ""
        self.project_title: str = ""
        self.demographics: Dict[str, Any] = {}
        self.team: List[str] = list(MANDATORY_ROLES)
        self.dev_flow_order: List[str] = list(settings.default_dev_flow_order) or list(MANDATORY_ROLES)
        self.design: str = ""
        self._lists: Dict[UpdateType, List[WireModel]] = {kind: [] for kind in LIST_KEY}
        self.raw_text: Dict[StageName, str] = {}

    @property
    def personas(self) -> List[Persona]:
        return list(self._lists[UpdateType.PERSONA])

    @property
    def features(self) -> List[Feature]:
        return list(self._lists[UpdateType.FEATURE])

    @property
    def stories(self) -> List[Story]:
        return list(self._lists[UpdateType.STORY])

    @property
    def screens(self) -> List[Screen]:
        return list(self._lists[UpdateType.SCREEN])

    @property
    def flows(self) -> List[Flow]:
        return list(self._lists[UpdateType.FLOW])

    def items(self, update_type: UpdateType) -> List[WireModel]:
        return list(self._lists[update_type])

    def merge_at(self, update_type: UpdateType, index: int, item: WireModel) -> str:
        """Replace the item at index, or append when index is past the end.

        Returns:
            "replaced" or "appended".
        """
        items = self._lists[update_type]
        if 0 <= index < len(items):
            items[index] = item
            return "replaced"
        items.append(item)
        return "appended"

    def replace(self, update_type: UpdateType, items: List[WireModel]) -> None:
        self._lists[update_type] = list(items)

    def clear(self, update_type: UpdateType) -> None:
        self._lists[update_type] = []

    # ------------------------------------------------------------------
    # Team roster
    # ------------------------------------------------------------------

    def set_team(self, roles: List[str]) -> None:
        """Replace the roster; mandatory roles are always kept."""
        team = [role for role in roles if role and role != USER_FEEDBACK_ROLE]
        for role in MANDATORY_ROLES:
            if role not in team:
                team.append(role)
        self.team = list(dict.fromkeys(team))
        self.dev_flow_order = [role for role in self.dev_flow_order if role in self.team] or list(MANDATORY_ROLES)

    def set_dev_flow_order(self, roles: List[str]) -> None:
        """Set the role order of the team flow. The feedback role is appended later."""
        order = [role for role in roles if role and role != USER_FEEDBACK_ROLE]
        for role in order:
            if role not in self.team:
                self.team.append(role)
        self.dev_flow_order = list(dict.fromkeys(order)) or list(MANDATORY_ROLES)

    # ------------------------------------------------------------------
    # Stage slices
    # ------------------------------------------------------------------

    def stage_slice(self, stage: StageName) -> Dict[str, Any]:
        """Stage-appropriate part of the store, as persisted in the stage record."""
        if stage == StageName.IDEA:
            return {"idea": self.idea, "projectTitle": self.project_title}
        if stage == StageName.USERS:
            return {
                "personas": [p.to_wire() for p in self.personas],
                "demographics": dict(self.demographics),
            }
        if stage == StageName.FEATURES:
            return {"features": [f.to_wire() for f in self.features]}
        if stage == StageName.TEAM:
            return {"team": list(self.team), "devFlowOrder": list(self.dev_flow_order)}
        if stage == StageName.STORIES:
            return {"stories": [s.to_wire() for s in self.stories]}
        return {
            "design": self.design,
            "screens": [s.to_wire() for s in self.screens],
            "flows": [f.to_wire() for f in self.flows],
        }

    def apply_stage_data(self, stage: StageName, data: Dict[str, Any]) -> None:
        """Load a persisted stage document back into the store."""
        if not data:
            return
        if stage == StageName.IDEA:
            self.idea = str(data.get("idea") or self.idea)
            self.project_title = str(data.get("projectTitle") or self.project_title)
        elif stage == StageName.TEAM:
            if isinstance(data.get("team"), list):
                self.set_team([str(role) for role in data["team"]])
            if isinstance(data.get("devFlowOrder"), list):
                self.set_dev_flow_order([str(role) for role in data["devFlowOrder"]])
        else:
            if stage == StageName.USERS and isinstance(data.get("demographics"), dict):
                self.demographics = dict(data["demographics"])
            if stage == StageName.DESIGN and isinstance(data.get("design"), str):
                self.design = data["design"]
            for key, update_type in ARTIFACT_KEYS.items():
                raw_items = data.get(key)
                if isinstance(raw_items, list):
                    items = [normalize_artifact(update_type, raw, idx) for idx, raw in enumerate(raw_items)]
                    self.replace(update_type, [item for item in items if item is not None])

    def snapshot(self) -> Dict[str, Any]:
        """Complete JSON-compatible dump of the store."""
        data: Dict[str, Any] = {
            "idea": self.idea,
            "projectTitle": self.project_title,
            "demographics": dict(self.demographics),
            "team": list(self.team),
            "devFlowOrder": list(self.dev_flow_order),
            "design": self.design,
        }
        for key, update_type in ARTIFACT_KEYS.items():
            data[key] = [item.to_wire() for item in self._lists[update_type]]
        return data

    def load_snapshot(self, data: Dict[str, Any]) -> None:
        """Replace the whole store with a snapshot dump."""
        self.raw_text = {}
        self.idea = str(data.get("idea") or "")
        self.project_title = str(data.get("projectTitle") or "")
        self.demographics = dict(data.get("demographics") or {})
        self.set_team(list(data.get("team") or MANDATORY_ROLES))
        self.set_dev_flow_order(list(data.get("devFlowOrder") or MANDATORY_ROLES))
        self.design = str(data.get("design") or "")
        for key, update_type in ARTIFACT_KEYS.items():
            raw_items = data.get(key) or []
            items = [normalize_artifact(update_type, raw, idx) for idx, raw in enumerate(raw_items)]
            self.replace(update_type, [item for item in items if item is not None])

