"""
Prompt Provider

Resolves a prompt key + language + typed variable record into final prompt
text. Each prompt key has exactly one pydantic variable model; variables are
validated here, before rendering.
"""

import json
import logging
import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field

from .prompt_templates import TEMPLATES

logger = logging.getLogger("marginalia.common.prompts")

# Group 1-3: list/scalar section, group 4: plain placeholder
_TOKEN_RE = re.compile(r"\{\{#(\w+)\}\}(.*?)\{\{/(\w+)\}\}|\{\{\s*(\w+)\s*\}\}", re.DOTALL)
_ITEM_RE = re.compile(r"\{\{\s*\.\s*\}\}")


class PromptKey(str, Enum):
    """All prompt keys known to the provider"""
    CHAT_SYSTEM = "chat_system"
    POLISH_SYSTEM = "polish_system"
    POLISH_USER = "polish_user"
    TRANSLATE_SYSTEM = "translate_system"
    TRANSLATE_USER = "translate_user"
    TRANSLATE_DICT_SYSTEM = "translate_dict_system"
    TRANSLATE_DICT_USER = "translate_dict_user"
    QUERY_TRANSFORM_SYSTEM = "query_transform_system"
    QUERY_TRANSFORM_USER = "query_transform_user"
    ANSWER_SYNTH_SYSTEM = "answer_synth_system"
    ANSWER_SYNTH_USER = "answer_synth_user"
    NOTE_GEN_SYSTEM = "note_gen_system"
    NOTE_GEN_USER = "note_gen_user"
    ASK_CONTEXT_PREFIX = "ask_context_prefix"
    ASK_CONTEXT_PREFIX_WITH_SOURCE = "ask_context_prefix_with_source"


# ============================================================================
# Variable records
# ============================================================================

class PromptVars(BaseModel):
    """Base for prompt variable records. Unknown fields are rejected."""
    model_config = ConfigDict(extra="forbid", frozen=True)


class NoVars(PromptVars):
    """Prompt without placeholders"""


class PolishUserVars(PromptVars):
    text: str
    style: str = "default"


class TranslateUserVars(PromptVars):
    text: str
    target_lang: str


class TranslateDictSystemVars(PromptVars):
    target_lang: str
    source_lang: str = "Source Language"


class TranslateDictUserVars(PromptVars):
    text: str
    target_lang: str
    source_lang: str = "Source Language"


class QueryTransformUserVars(PromptVars):
    user_input: str
    history: List[str] = Field(default_factory=list, description="Rendered 'role: content' turns")


class SynthesisUserVars(PromptVars):
    original_input: str
    context: List[str] = Field(default_factory=list)


class NoteGenUserVars(PromptVars):
    selected_text: str
    source_url: str = ""
    context: List[str] = Field(default_factory=list)


class AskContextVars(PromptVars):
    text: str


class AskContextWithSourceVars(PromptVars):
    text: str
    source_url: str


PROMPT_VARIABLES: Dict[PromptKey, Type[PromptVars]] = {
    PromptKey.CHAT_SYSTEM: NoVars,
    PromptKey.POLISH_SYSTEM: NoVars,
    PromptKey.POLISH_USER: PolishUserVars,
    PromptKey.TRANSLATE_SYSTEM: NoVars,
    PromptKey.TRANSLATE_USER: TranslateUserVars,
    PromptKey.TRANSLATE_DICT_SYSTEM: TranslateDictSystemVars,
    PromptKey.TRANSLATE_DICT_USER: TranslateDictUserVars,
    PromptKey.QUERY_TRANSFORM_SYSTEM: NoVars,
    PromptKey.QUERY_TRANSFORM_USER: QueryTransformUserVars,
    PromptKey.ANSWER_SYNTH_SYSTEM: NoVars,
    PromptKey.ANSWER_SYNTH_USER: SynthesisUserVars,
    PromptKey.NOTE_GEN_SYSTEM: NoVars,
    PromptKey.NOTE_GEN_USER: NoteGenUserVars,
    PromptKey.ASK_CONTEXT_PREFIX: AskContextVars,
    PromptKey.ASK_CONTEXT_PREFIX_WITH_SOURCE: AskContextWithSourceVars,
}


# ============================================================================
# Rendering
# ============================================================================

def render(template: str, variables: Mapping[str, Any]) -> str:
    """Render ``{{var}}`` placeholders and ``{{#list}}..{{.}}..{{/list}}`` sections.

    A list section repeats its body once per item with ``{{.}}`` bound to the
    item. A truthy scalar renders the body once; falsy values drop it.
    Unknown placeholders render as the empty string.

    Only template text is scanned for placeholders; substituted values are
    inserted verbatim, even when they contain ``{{...}}`` themselves.
    """
    def _token(match: "re.Match[str]") -> str:
        if match.group(4) is not None:
            value = variables.get(match.group(4))
            return "" if value is None else str(value)

        name, inner, closing = match.group(1), match.group(2), match.group(3)
        if name != closing:
            return ""
        value = variables.get(name)
        if not value:
            return ""
        if isinstance(value, (list, tuple)):
            pieces = [render(piece, variables) for piece in _ITEM_RE.split(inner)]
            return "".join(str(item).join(pieces) for item in value)
        return render(inner, variables)

    return _TOKEN_RE.sub(_token, template)


class PromptProvider:
    """
    Resolves prompt text for a key and language.

    Overrides replace the default template for one (key, language) pair and
    are optionally persisted to a JSON file.

    Usage:
        prompts = PromptProvider(language="en")
        text = prompts.get_prompt(
            PromptKey.POLISH_USER, variables=PolishUserVars(text="hi", style="formal")
        )
    """

    def __init__(
        self,
        language: str = "en",
        overrides_path: Optional[Union[str, Path]] = None,
    ):
        if language not in TEMPLATES:
            raise ValueError(f"Unsupported prompt language: {language}")
        self.language = language
        self._overrides: Dict[str, Dict[str, str]] = {}
        self._overrides_path = Path(overrides_path) if overrides_path else None
        if self._overrides_path and self._overrides_path.exists():
            self._load_overrides()

    def _lang(self, lang: Optional[str]) -> str:
        lang = lang or self.language
        if lang not in TEMPLATES:
            raise ValueError(f"Unsupported prompt language: {lang}")
        return lang

    @staticmethod
    def validate_variables(
        key: PromptKey,
        variables: Union[PromptVars, Mapping[str, Any], None],
    ) -> PromptVars:
        """Coerce variables into the record type registered for ``key``.

        Raises:
            TypeError: a record of the wrong type was passed
            pydantic.ValidationError: required fields are missing or unknown
                fields were supplied
        """
        model = PROMPT_VARIABLES[PromptKey(key)]
        if variables is None:
            return model()
        if isinstance(variables, PromptVars):
            if not isinstance(variables, model):
                raise TypeError(
                    f"Prompt {PromptKey(key).value} expects {model.__name__}, "
                    f"got {type(variables).__name__}"
                )
            return variables
        return model(**dict(variables))

    def get_template(self, key: PromptKey, lang: Optional[str] = None) -> str:
        key = PromptKey(key)
        lang = self._lang(lang)
        override = self._overrides.get(key.value, {}).get(lang)
        return override or TEMPLATES[lang][key.value]

    def get_prompt(
        self,
        key: PromptKey,
        lang: Optional[str] = None,
        variables: Union[PromptVars, Mapping[str, Any], None] = None,
    ) -> str:
        """Render the prompt for ``key``. Pure given (key, lang, variables, overrides)."""
        record = self.validate_variables(key, variables)
        return render(self.get_template(key, lang), record.model_dump())

    # ------------------------------------------------------------------ #
    # Overrides
    # ------------------------------------------------------------------ #

    def set_override(self, key: PromptKey, lang: str, value: str) -> None:
        key = PromptKey(key)
        self._overrides.setdefault(key.value, {})[self._lang(lang)] = value
        self._save_overrides()

    def reset_override(self, key: PromptKey, lang: str) -> None:
        key = PromptKey(key)
        per_key = self._overrides.get(key.value)
        if per_key is not None:
            per_key.pop(self._lang(lang), None)
            if not per_key:
                del self._overrides[key.value]
        self._save_overrides()

    def all_prompts(self, lang: Optional[str] = None) -> Dict[str, Dict[str, Optional[str]]]:
        """Every prompt key with its default text and current override."""
        lang = self._lang(lang)
        return {
            key: {
                "default": template,
                "override": self._overrides.get(key, {}).get(lang),
            }
            for key, template in TEMPLATES[lang].items()
        }

    def _load_overrides(self) -> None:
        try:
            with open(self._overrides_path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load prompt overrides from %s: %s", self._overrides_path, e)
            return
        for key, per_lang in data.items():
            if key in PromptKey._value2member_map_ and isinstance(per_lang, dict):
                self._overrides[key] = {l: v for l, v in per_lang.items() if l in TEMPLATES}
        logger.info("Loaded prompt overrides for %d keys", len(self._overrides))

    def _save_overrides(self) -> None:
        if not self._overrides_path:
            return
        self._overrides_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._overrides_path, "w") as f:
            json.dump(self._overrides, f, indent=2, ensure_ascii=False)
