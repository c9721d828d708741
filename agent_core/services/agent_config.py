"""
Agent behavior configuration loaded from JSON files.

Files live in settings.AGENT_CONFIG_DIR:
    onboarding-flow.json         individual onboarding flow
    group-onboarding-flow.json   group onboarding flow
    agent-memory-settings.json   user and chat memory fields
    safety-settings.json         safety guidelines appended to reply prompts
    system-prompt.txt            persona prompt for replies

A missing or invalid file falls back to the built-in default; files are
read once and cached until reload().
"""

import json
from pathlib import Path

from pydantic import BaseModel, ValidationError

from agent_core.config import settings
from agent_core.infrastructure.observability.logging import get_logger
from agent_core.models.domain.agent_config_domain import (
    DEFAULT_PERSONA_PROMPT,
    GroupOnboardingFlow,
    MemorySettings,
    OnboardingFlow,
    SafetySettings,
    default_group_onboarding_flow,
    default_onboarding_flow,
)

logger = get_logger(__name__)

ONBOARDING_FLOW_FILE = "onboarding-flow.json"
GROUP_ONBOARDING_FLOW_FILE = "group-onboarding-flow.json"
MEMORY_SETTINGS_FILE = "agent-memory-settings.json"
SYSTEM_PROMPT_FILE = "system-prompt.txt"
SAFETY_SETTINGS_FILE = "safety-settings.json"


class AgentConfigProvider:
    def __init__(self, config_dir: Path | None = None):
        self.config_dir = Path(config_dir or settings.AGENT_CONFIG_DIR)
        self._cache: dict[str, object] = {}

    def reload(self) -> None:
        self._cache.clear()
        logger.info("Agent configuration cache cleared", config_dir=str(self.config_dir))

    def _load_model(self, filename: str, model: type[BaseModel], default):
        if filename in self._cache:
            return self._cache[filename]

        path = self.config_dir / filename
        value = default()
        if path.exists():
            try:
                value = model.model_validate(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.warning("Invalid agent config file, using default", file=filename, error=str(e))
        else:
            logger.debug("Agent config file not found, using default", file=filename)

        self._cache[filename] = value
        return value

    def onboarding_flow(self) -> OnboardingFlow:
        return self._load_model(ONBOARDING_FLOW_FILE, OnboardingFlow, default_onboarding_flow)

    def group_onboarding_flow(self) -> GroupOnboardingFlow:
        return self._load_model(
            GROUP_ONBOARDING_FLOW_FILE, GroupOnboardingFlow, default_group_onboarding_flow
        )

    def memory_settings(self) -> MemorySettings:
        return self._load_model(MEMORY_SETTINGS_FILE, MemorySettings, MemorySettings)

    def safety_settings(self) -> SafetySettings:
        return self._load_model(SAFETY_SETTINGS_FILE, SafetySettings, SafetySettings)

    def persona_prompt(self) -> str:
        if SYSTEM_PROMPT_FILE in self._cache:
            return self._cache[SYSTEM_PROMPT_FILE]

        prompt = DEFAULT_PERSONA_PROMPT
        path = self.config_dir / SYSTEM_PROMPT_FILE
        try:
            if path.exists():
                prompt = path.read_text(encoding="utf-8").strip() or DEFAULT_PERSONA_PROMPT
        except OSError as e:
            logger.warning("Reading persona prompt failed, using default", error=str(e))

        self._cache[SYSTEM_PROMPT_FILE] = prompt
        return prompt
