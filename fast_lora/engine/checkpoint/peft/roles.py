import enum
import logging

from fast_lora.config import Config, Field, FieldHint, ValidationError, config_class

logger = logging.getLogger(__name__)


class LayerRole(str, enum.Enum):
    embedding = "embedding"
    attention = "attention"
    feed_forward = "feed_forward"
    unclassified = "unclassified"


def _path_contains(path: str, marker: str) -> bool:
    # Markers are matched within a single path component, so they can't span a separator.
    return any(marker in component for component in path.split("."))


@config_class()
class RoleRule(Config):
    role: LayerRole = Field(
        desc="The role assigned to the matching module paths.",
        hint=FieldHint.core,
    )
    required_markers: list[str] = Field(
        default_factory=list,
        desc="Markers that must all appear in the module path.",
        hint=FieldHint.core,
    )
    markers: list[str] = Field(
        default_factory=list,
        desc="Markers of which at least one must appear in the module path, if any is given.",
        hint=FieldHint.core,
    )

    def _validate(self) -> None:
        super()._validate()
        if not self.required_markers and not self.markers:
            raise ValidationError(f"Rule for role `{self.role.value}` has no marker and would match every module.")

    def matches(self, path: str) -> bool:
        return all(_path_contains(path, marker) for marker in self.required_markers) and (
            not self.markers or any(_path_contains(path, marker) for marker in self.markers)
        )


_ATTENTION_PROJECTIONS = [
    "q_proj",
    "k_proj",
    "v_proj",
    "o_proj",
    "qkv_proj",
    "out_proj",
    "query",
    "key",
    "value",
    "c_attn",
    "c_proj",
    "Wqkv",
    "dense",
]


def _default_rules() -> list[RoleRule]:
    return [
        RoleRule(
            role=LayerRole.embedding,
            markers=["embed_tokens", "lm_head", "wte", "embed", "word_embeddings"],
        ),
        RoleRule(role=LayerRole.attention, required_markers=["attn"], markers=_ATTENTION_PROJECTIONS),
        RoleRule(role=LayerRole.attention, required_markers=["attention"], markers=_ATTENTION_PROJECTIONS),
        RoleRule(
            role=LayerRole.feed_forward,
            markers=[
                "mlp",
                "feed_forward",
                "ffn",
                "up_proj",
                "down_proj",
                "gate_proj",
                "fc1",
                "fc2",
                "c_fc",
                "w1",
                "w2",
                "w3",
                "dense_h_to_4h",
                "dense_4h_to_h",
            ],
        ),
    ]


def _default_role_tags() -> dict[LayerRole, str]:
    return {
        LayerRole.embedding: "",
        LayerRole.attention: "csa",
        LayerRole.feed_forward: "block",
        LayerRole.unclassified: "generic",
    }


@config_class()
class RoleTable(Config):
    """
    Classify module paths into architectural roles by name.
    Rules are tried in order and the first match wins. Paths that match no rule are `unclassified`.
    """

    rules: list[RoleRule] = Field(
        default_factory=_default_rules,
        desc="The classification rules, in order of priority.",
        hint=FieldHint.feature,
    )
    role_tags: dict[LayerRole, str] = Field(
        default_factory=_default_role_tags,
        desc="The tag appended to the model tag in typed key prefixes, for each role."
        " An empty tag gives the bare `lora_{model_tag}` prefix.",
        hint=FieldHint.feature,
    )

    def _validate(self) -> None:
        super()._validate()
        for role in LayerRole:
            if role not in self.role_tags:
                raise ValidationError(f"Missing tag for role `{role.value}`")

    def with_rules(self, *rules: RoleRule) -> "RoleTable":
        """
        A copy of the table with extra rules, tried before the existing ones.
        """
        return self.to_copy({"rules": [rule.to_dict() for rule in (*rules, *self.rules)]})

    def classify(self, path: str) -> LayerRole:
        for rule in self.rules:
            if rule.matches(path):
                return rule.role
        return LayerRole.unclassified

    def get_prefix(self, role: LayerRole, model_tag: str) -> str:
        tag = self.role_tags[role]
        return f"lora_{model_tag}_{tag}" if tag else f"lora_{model_tag}"
