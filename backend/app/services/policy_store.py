"""Child Policy Store.

Authoritative read/write access to child policy profiles. Every write
follows the same path:

1. Load the latest persisted profile (never the cache)
2. Reject unknown or immutable keys
3. Overlay the patch (nested objects merge key by key)
4. Validate the merged profile as a whole
5. Reject contradictions no template ever produces
6. Enforce the charging invariant (blocked app → charging off)
7. Persist with ``version + 1`` and record the caller's audit event

Reads go through a short-lived Redis cache when Redis is reachable.
"""

import logging
import uuid
from datetime import datetime, timezone

from pydantic import ValidationError

from app.config import settings
from app.core.exceptions import (
    ChildArchivedError,
    ChildNotFoundError,
    InvalidPatchError,
    LinkCodeError,
)
from app.core.redis_client import get_redis
from app.core.security import get_password_hash
from app.models.user import User
from app.schemas.activity import ActivityEntry, ActivityKind, Severity
from app.schemas.policy import (
    IMMUTABLE_FIELDS,
    NESTED_FIELDS,
    AgeTemplate,
    AuditNote,
    ChildCreate,
    ChildProfile,
)
from app.services.activity_log import ActivityLog
from app.services.invitation_service import generate_link_code, normalize_code
from app.services.repository import GuardianRepository
from app.services.template_resolver import resolve_template

logger = logging.getLogger(__name__)

CHARGING_DISABLED_SUMMARY = "disabled because app is blocked"


def _cache_key(child_id: uuid.UUID) -> str:
    return f"policy:child:{child_id}"


def merge_patch(current: dict, patch: dict) -> dict:
    """Overlay ``patch`` on a dumped profile; nested objects merge one level deep."""
    merged = dict(current)
    for key, value in patch.items():
        if key in NESTED_FIELDS and isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _check_contradictions(child_id: uuid.UUID, patch: dict, profile: ChildProfile) -> None:
    charging_patch = patch.get("charging")
    apps_patch = patch.get("apps")

    # Judge the validated values so coerced inputs like "false" are caught too
    if isinstance(charging_patch, dict) and isinstance(apps_patch, dict):
        touches_both = "enabled" in charging_patch and "evzone_charging" in apps_patch
        if touches_both and profile.charging.enabled and not profile.apps.evzone_charging:
            raise InvalidPatchError(
                child_id, "charging_app_blocked",
                "Cannot enable charging while blocking the EVzone Charging app",
            )

    charging = profile.charging
    if "charging" in patch and charging.enabled:
        if charging.daily_kwh_cap <= 0:
            raise InvalidPatchError(
                child_id, "charging_daily_cap",
                "Charging needs a positive daily kWh cap",
            )
        if charging.session_kwh_cap > charging.daily_kwh_cap:
            raise InvalidPatchError(
                child_id, "charging_session_cap",
                "Session kWh cap cannot exceed the daily kWh cap",
            )

    curfew = profile.curfew
    if "curfew" in patch and curfew.enabled and curfew.start == curfew.end:
        raise InvalidPatchError(
            child_id, "curfew_window",
            "Curfew start and end cannot be the same time",
        )


class PolicyStore:
    def __init__(self, repo: GuardianRepository, activity: ActivityLog) -> None:
        self.repo = repo
        self.activity = activity

    # -- Reads ----------------------------------------------------------------

    async def get_child(
        self,
        child_id: uuid.UUID,
        household_id: uuid.UUID | None = None,
        bypass_cache: bool = False,
    ) -> ChildProfile:
        """Return the child's profile, scoped to ``household_id`` when given.

        Children of other households are reported as not found.
        """
        profile = None
        redis = await get_redis()
        if not bypass_cache and redis is not None:
            cached = await redis.get(_cache_key(child_id))
            if cached:
                profile = ChildProfile.model_validate_json(cached)

        if profile is None:
            profile = await self.repo.load_child(child_id)
            if profile is not None and redis is not None:
                await redis.setex(
                    _cache_key(child_id),
                    settings.POLICY_CACHE_TTL_SECONDS,
                    profile.model_dump_json(),
                )

        if profile is None or (household_id is not None and profile.household_id != household_id):
            raise ChildNotFoundError(child_id)
        return profile

    async def list_children(self, household_id: uuid.UUID) -> list[ChildProfile]:
        return await self.repo.load_children(household_id)

    async def _load_for_write(
        self, child_id: uuid.UUID, household_id: uuid.UUID | None = None,
    ) -> ChildProfile:
        current = await self.get_child(child_id, household_id, bypass_cache=True)
        if current.archived_at is not None:
            raise ChildArchivedError(child_id)
        return current

    async def _save(self, profile: ChildProfile) -> ChildProfile:
        saved = await self.repo.save_child_patch(profile)
        redis = await get_redis()
        if redis is not None:
            await redis.delete(_cache_key(profile.id))
        return saved

    # -- Patches --------------------------------------------------------------

    async def apply_patch(
        self,
        child_id: uuid.UUID,
        patch: dict,
        audit_event: AuditNote | None = None,
        actor_id: uuid.UUID | None = None,
        household_id: uuid.UUID | None = None,
    ) -> ChildProfile:
        """Validate and persist a partial policy update.

        Raises:
            ChildNotFoundError: Unknown child (or another household's).
            ChildArchivedError: The child was unlinked.
            InvalidPatchError: Unknown/immutable keys, invalid values or a
                contradictory combination. Nothing is written.
        """
        current = await self._load_for_write(child_id, household_id)

        unknown = sorted(set(patch) - set(ChildProfile.model_fields))
        if unknown:
            raise InvalidPatchError(
                child_id, "unknown_field", f"Unknown policy fields: {', '.join(unknown)}"
            )
        immutable = sorted(set(patch) & IMMUTABLE_FIELDS)
        if immutable:
            raise InvalidPatchError(
                child_id, "immutable_field", f"Fields cannot be patched: {', '.join(immutable)}"
            )

        current_data = current.model_dump()
        try:
            profile = ChildProfile.model_validate(merge_patch(current_data, patch))
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            raise InvalidPatchError(
                child_id, "validation", f"{location}: {first['msg']}"
            ) from exc

        _check_contradictions(child_id, patch, profile)

        charging_forced_off = profile.charging.enabled and not profile.apps.evzone_charging
        if charging_forced_off:
            profile = profile.model_copy(
                update={"charging": profile.charging.model_copy(update={"enabled": False})}
            )

        if profile.model_dump() == current_data:
            logger.debug("Patch for child %s changes nothing", child_id)
            return current

        profile = profile.model_copy(update={"version": current.version + 1})
        saved = await self._save(profile)
        logger.info("Child %s policy updated to version %d", child_id, saved.version)

        if charging_forced_off:
            await self.activity.record(ActivityEntry(
                household_id=saved.household_id,
                child_id=saved.id,
                kind=ActivityKind.CHARGING_UPDATED,
                summary=f"{saved.name}: charging {CHARGING_DISABLED_SUMMARY}",
                severity=Severity.WARNING,
                actor_id=actor_id,
            ))
        if audit_event is not None:
            await self.activity.record(ActivityEntry(
                household_id=saved.household_id,
                child_id=saved.id,
                kind=audit_event.kind,
                summary=audit_event.summary,
                severity=audit_event.severity,
                actor_id=actor_id,
            ))
        return saved

    async def apply_template(
        self,
        child_id: uuid.UUID,
        template: AgeTemplate,
        actor_id: uuid.UUID | None = None,
        household_id: uuid.UUID | None = None,
    ) -> ChildProfile:
        current = await self._load_for_write(child_id, household_id)
        template = AgeTemplate(template)
        return await self.apply_patch(
            child_id,
            resolve_template(template, current),
            audit_event=AuditNote(
                kind=ActivityKind.TEMPLATE_APPLIED,
                summary=f"{current.name}: applied {template.label} constraints",
                severity=Severity.SUCCESS,
            ),
            actor_id=actor_id,
            household_id=household_id,
        )

    # -- Lifecycle ------------------------------------------------------------

    async def create_child(
        self,
        household_id: uuid.UUID,
        data: ChildCreate,
        actor_id: uuid.UUID | None = None,
    ) -> ChildProfile:
        """Create a guardian-verified child and apply its starting template."""
        now = datetime.now(timezone.utc)
        profile = ChildProfile(
            id=uuid.uuid4(),
            household_id=household_id,
            name=data.name,
            dob=data.dob,
            school=data.school,
            grade=data.grade,
            country=data.country,
            currency=data.currency,
            guardian_verified=True,
            consent_at=now,
        )

        user_id = None
        if data.pin is not None:
            user = User(
                household_id=household_id,
                name=data.name,
                role="child",
                pin_hash=get_password_hash(data.pin),
            )
            await self.repo.insert_user(user)
            user_id = user.id

        await self.repo.insert_child(profile, user_id=user_id)
        logger.info("Child %s created in household %s", profile.id, household_id)
        await self.activity.record(ActivityEntry(
            household_id=household_id,
            child_id=profile.id,
            kind=ActivityKind.HOUSEHOLD_UPDATED,
            summary=f"Added child {profile.name}",
            severity=Severity.SUCCESS,
            actor_id=actor_id,
        ))

        if data.template != AgeTemplate.CUSTOM:
            return await self.apply_template(profile.id, data.template, actor_id=actor_id)
        return profile

    async def link_child(
        self,
        household_id: uuid.UUID,
        code: str,
        actor_id: uuid.UUID | None = None,
    ) -> ChildProfile:
        """Attach an existing (unlinked or archived) child account via its link code."""
        code = normalize_code(code)
        current = await self.repo.find_child_by_link_code(code)
        if current is None or (current.household_id is not None and current.archived_at is None):
            raise LinkCodeError(code)

        profile = current.model_copy(update={
            "household_id": household_id,
            "archived_at": None,
            "guardian_verified": True,
            "consent_at": datetime.now(timezone.utc),
            "version": current.version + 1,
        })
        saved = await self._save(profile)
        await self.repo.set_link_code(saved.id, None)
        logger.info("Child %s linked to household %s", saved.id, household_id)

        await self.activity.record(ActivityEntry(
            household_id=household_id,
            child_id=saved.id,
            kind=ActivityKind.HOUSEHOLD_UPDATED,
            summary=f"Linked child account {saved.name}",
            severity=Severity.SUCCESS,
            actor_id=actor_id,
        ))
        return saved

    async def archive_child(
        self,
        child_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
        household_id: uuid.UUID | None = None,
    ) -> tuple[ChildProfile, str]:
        """Unlink a child from its household; the row is kept, never deleted.

        Returns the archived profile and a fresh link code that lets a
        household attach the account again.
        """
        current = await self._load_for_write(child_id, household_id)
        code = await generate_link_code(self.repo.db)
        profile = current.model_copy(update={
            "household_id": None,
            "archived_at": datetime.now(timezone.utc),
            "version": current.version + 1,
        })
        saved = await self._save(profile)
        await self.repo.set_link_code(saved.id, code)
        logger.info("Child %s archived (household %s)", child_id, current.household_id)

        await self.activity.record(ActivityEntry(
            household_id=current.household_id,
            child_id=saved.id,
            kind=ActivityKind.HOUSEHOLD_UPDATED,
            summary=f"Unlinked child {saved.name}",
            severity=Severity.WARNING,
            actor_id=actor_id,
        ))
        return saved, code
