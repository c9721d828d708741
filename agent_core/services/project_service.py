"""
Project lifecycle: keyword resolution on every message and the
classifier-driven project flow (create / update / complete / reference).
"""

import json
from dataclasses import dataclass, field

from agent_core.db.helpers import DatabaseError
from agent_core.infrastructure.observability.logging import get_logger
from agent_core.models.domain.conversation_domain import Project, ThreadMessage
from agent_core.models.domain.intent_domain import (
    ProjectAction,
    ProjectFlowIntent,
    ProjectIntent,
    ProjectIntentType,
)
from agent_core.repositories.conversation_repository import ConversationRepository

logger = get_logger(__name__)

GENERIC_PROJECT_NAME = "New Project"

COMPLETION_PHRASES = (
    "complete project",
    "finish project",
    "mark as done",
    "project is done",
    "project complete",
)

CREATION_PHRASES = (
    "track this project",
    "track the project",
    "create a project",
    "start a project",
    "make a project",
    "begin a project",
    "new project called",
    "create project called",
    "track project called",
)

CREATION_PREFIXES = ("create project:", "new project:", "track project:", "project name:")

_ACTION_VERBS = {
    ProjectAction.CREATE: "created",
    ProjectAction.UPDATE: "updated",
    ProjectAction.COMPLETE: "completed",
    ProjectAction.REFERENCE: "referenced",
}


class ProjectServiceError(Exception):
    """Raised when project records cannot be read or written."""

    def __init__(self, message: str, chat_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.chat_id = chat_id
        self.recoverable = recoverable


@dataclass(slots=True)
class ProjectFlowOutcome:
    """What a project flow did, plus the context line handed to the reply generator."""

    action: ProjectAction
    project_name: str
    success: bool = False
    message: str = ""
    project_id: str | None = None
    fall_through: bool = False
    active_projects: list[str] = field(default_factory=list)
    completed_projects: list[str] = field(default_factory=list)
    is_listing: bool = False

    def context_line(self) -> str:
        if self.is_listing:
            lines = ["Here's a list of all projects with their status:", ""]
            if self.active_projects:
                lines.append("Active projects:")
                lines.extend(f"- {name}" for name in self.active_projects)
                lines.append("")
            if self.completed_projects:
                lines.append("Completed projects:")
                lines.extend(f"- {name}" for name in self.completed_projects)
            return "\n".join(lines).strip()
        verb = _ACTION_VERBS[self.action]
        return f'Project "{self.project_name}" was just {verb}. {self.message}'.strip()


def analyze_project_intent(message: ThreadMessage, projects: list[Project]) -> ProjectIntent:
    """Conservative keyword reading of a message."""
    content = message.content.lower()

    if any(phrase in content for phrase in COMPLETION_PHRASES):
        return ProjectIntent(type=ProjectIntentType.COMPLETE)

    if any(phrase in content for phrase in CREATION_PHRASES) or content.startswith(
        CREATION_PREFIXES
    ):
        return ProjectIntent(type=ProjectIntentType.START_NEW)

    for project in projects:
        if not project.is_live and project.name.lower() in content:
            return ProjectIntent(type=ProjectIntentType.REFERENCE, project_id=project.id)

    return ProjectIntent(type=ProjectIntentType.CONTINUE_CURRENT)


def find_target_project(
    projects: list[Project], project_name: str, action: ProjectAction
) -> Project | None:
    """
    Pick the project a classified flow refers to.

    Exact case-insensitive name match wins; completion also accepts a
    substring match in either direction; anything but creation finally
    falls back to the first live project.
    """
    target = None
    wanted = project_name.strip().lower()

    if wanted and project_name != GENERIC_PROJECT_NAME:
        target = next((p for p in projects if p.name.lower() == wanted), None)
        if target is None and action is ProjectAction.COMPLETE:
            target = next(
                (p for p in projects if wanted in p.name.lower() or p.name.lower() in wanted),
                None,
            )

    if target is None and action is not ProjectAction.CREATE:
        target = next((p for p in projects if p.is_live), None)

    return target


def completion_target(content: str, projects: list[Project]) -> Project | None:
    """
    Live project a completion message refers to.

    A live project named in the message wins (longest name first); otherwise
    the text after the completion phrase is matched like a classified
    completion, falling back to the first live project.
    """
    live = [p for p in projects if p.is_live]
    lowered = content.lower()

    named = [p for p in live if p.name.lower() in lowered]
    if named:
        return max(named, key=lambda p: len(p.name))

    wanted = ""
    for phrase in COMPLETION_PHRASES:
        index = lowered.find(phrase)
        if index >= 0:
            wanted = content[index + len(phrase) :].strip(" :.!?\"'")
            break
    return find_target_project(live, wanted, ProjectAction.COMPLETE)


def project_defaults(message: ThreadMessage) -> tuple[str, str]:
    """Name and description for a project started by keyword."""
    content = message.content.strip()
    name = content[len("project:") :].strip() if content.lower().startswith("project:") else content
    excerpt = message.content[:100] + ("..." if len(message.content) > 100 else "")
    description = f"Project started by {message.sender_name}. Initial message: {excerpt}"
    return name, description


class ProjectService:
    def __init__(self, store: ConversationRepository | None):
        self.store = store

    async def _load_projects(self, chat_id: str) -> list[Project]:
        try:
            return await self.store.get_projects_by_chat(chat_id)
        except DatabaseError as e:
            raise ProjectServiceError(f"Could not load projects: {e}", chat_id=chat_id) from e

    async def list_projects(self, chat_id: str | None) -> list[Project]:
        if self.store is None or not chat_id:
            return []
        return await self._load_projects(chat_id)

    async def resolve(self, messages: list[ThreadMessage], chat_id: str) -> str | None:
        """
        Apply keyword-driven lifecycle changes for the latest message.

        Returns the id of the project the conversation is about, if any.
        """
        if self.store is None or not messages:
            return None

        projects = await self._load_projects(chat_id)
        live_project = next((p for p in projects if p.is_live), None)
        latest = messages[-1]
        intent = analyze_project_intent(latest, projects)

        try:
            if intent.type is ProjectIntentType.COMPLETE:
                target = completion_target(latest.content, projects)
                if target is None:
                    return None
                if await self.store.update_project(target.id, {"is_live": False}):
                    await self.store.log_project_event(
                        target.id,
                        "project_completed",
                        f"Project completed: {latest.content[:100]}",
                    )
                logger.info("Project completed by keyword", project_id=target.id)
                return target.id

            if intent.type is ProjectIntentType.REFERENCE and intent.project_id:
                return intent.project_id

            if intent.type is ProjectIntentType.START_NEW:
                name, description = project_defaults(latest)
                project_id = await self.store.create_project(chat_id, name, description)
                await self.store.log_project_event(
                    project_id, "project_created", f"Project created from chat {chat_id}"
                )
                return project_id

        except DatabaseError as e:
            raise ProjectServiceError(f"Project update failed: {e}", chat_id=chat_id) from e

        return live_project.id if live_project else None

    async def apply_project_flow(
        self, chat_id: str | None, intent: ProjectFlowIntent
    ) -> ProjectFlowOutcome:
        """Carry out a classified project action; failures are reported in the outcome."""
        outcome = ProjectFlowOutcome(action=intent.action, project_name=intent.project_name)

        if intent.action is ProjectAction.CREATE and (
            not intent.project_name or intent.project_name == GENERIC_PROJECT_NAME
        ):
            outcome.fall_through = True
            return outcome

        if self.store is None or not chat_id:
            outcome.message = "Unable to perform project operation - chat not found"
            return outcome

        try:
            projects = await self._load_projects(chat_id)
        except ProjectServiceError as e:
            logger.error("Project lookup failed", chat_id=chat_id, error=str(e))
            outcome.message = "Unable to load projects for this chat"
            return outcome

        target = find_target_project(projects, intent.project_name, intent.action)

        try:
            if intent.action is ProjectAction.CREATE:
                await self._create(chat_id, intent, outcome)
            elif intent.action is ProjectAction.UPDATE:
                await self._update(target, intent, outcome)
            elif intent.action is ProjectAction.COMPLETE:
                await self._complete(target, outcome)
            else:
                self._reference(projects, target, intent, outcome)
        except DatabaseError as e:
            logger.error(
                "Project flow failed",
                chat_id=chat_id,
                action=intent.action.value,
                error=str(e),
            )
            outcome.success = False
            outcome.message = f"Failed to {intent.action.value} project"

        logger.info(
            "Project flow applied",
            chat_id=chat_id,
            action=intent.action.value,
            success=outcome.success,
            project_id=outcome.project_id,
        )
        return outcome

    async def _create(
        self, chat_id: str, intent: ProjectFlowIntent, outcome: ProjectFlowOutcome
    ) -> None:
        project_id = await self.store.create_project(
            chat_id, intent.project_name, intent.project_description, intent.attributes
        )
        await self.store.log_project_event(
            project_id, "project_created", f"Project created with name: {intent.project_name}"
        )
        outcome.project_id = project_id
        outcome.success = True
        outcome.message = f"Created new project: {intent.project_name}"

    async def _update(
        self, target: Project | None, intent: ProjectFlowIntent, outcome: ProjectFlowOutcome
    ) -> None:
        if target is None:
            outcome.message = "No matching project found to update"
            return

        updated = False
        if intent.updates and await self.store.update_project(target.id, intent.updates):
            await self.store.log_project_event(
                target.id, "project_updated", f"Project updated: {json.dumps(intent.updates)}"
            )
            updated = True

        if intent.attribute_updates and await self.store.update_project_attributes(
            target.id, intent.attribute_updates, intent.replace_attributes
        ):
            await self.store.log_project_event(
                target.id,
                "project_attributes_updated",
                f"Project attributes updated: {json.dumps(intent.attribute_updates)}",
            )
            updated = True

        outcome.project_id = target.id
        outcome.success = updated
        outcome.message = f"Updated project: {target.name}"

    async def _complete(self, target: Project | None, outcome: ProjectFlowOutcome) -> None:
        if target is None:
            outcome.message = "No active project found to complete"
            return

        outcome.project_id = target.id
        if not target.is_live:
            outcome.success = True
            outcome.message = f"Project {target.name} is already completed"
            return

        if await self.store.update_project(target.id, {"is_live": False}):
            await self.store.log_project_event(
                target.id, "project_completed", "Project marked as complete"
            )
            outcome.success = True
            outcome.message = f"Completed project: {target.name}"

    @staticmethod
    def _reference(
        projects: list[Project],
        target: Project | None,
        intent: ProjectFlowIntent,
        outcome: ProjectFlowOutcome,
    ) -> None:
        if not intent.project_name:
            if not projects:
                outcome.message = "No projects found"
                return
            outcome.is_listing = True
            outcome.success = True
            outcome.active_projects = [p.name for p in projects if p.is_live]
            outcome.completed_projects = [p.name for p in projects if not p.is_live]
            outcome.message = (
                f"Found {len(outcome.active_projects)} active and "
                f"{len(outcome.completed_projects)} completed projects"
            )
        elif target is not None:
            outcome.project_id = target.id
            outcome.success = True
            outcome.message = f"Referenced project: {target.name}"
        else:
            outcome.message = "Could not find the referenced project"
