"""Tests for the child policy store (service level, SQLite)."""

import uuid
from datetime import date

import pytest

from app.core.exceptions import (
    ChildArchivedError,
    ChildNotFoundError,
    InvalidPatchError,
    LinkCodeError,
)
from app.schemas.activity import ActivityKind, Severity
from app.schemas.policy import AgeTemplate, AuditNote, ChildCreate
from app.services.policy_store import CHARGING_DISABLED_SUMMARY, merge_patch


async def _new_child(engines, template=AgeTemplate.CUSTOM, **fields):
    household, founder, member = await engines.new_household()
    data = ChildCreate(name="Amani", dob=date(2015, 4, 12), template=template, **fields)
    profile = await engines.policies.create_child(household.id, data, actor_id=member.id)
    return household, member, profile


class TestMergePatch:
    def test_nested_objects_merge_key_by_key(self):
        current = {"curfew": {"enabled": False, "start": "20:30"}, "daily_limit": 1}
        merged = merge_patch(current, {"curfew": {"enabled": True}})
        assert merged["curfew"] == {"enabled": True, "start": "20:30"}
        assert current["curfew"]["enabled"] is False

    def test_lists_replace(self):
        merged = merge_patch({"category_blocks": ["Adult"]}, {"category_blocks": ["Art"]})
        assert merged["category_blocks"] == ["Art"]


class TestCreateAndRead:
    async def test_create_applies_template(self, engines):
        household, _, profile = await _new_child(engines, template=AgeTemplate.CHILD)
        assert profile.template == AgeTemplate.CHILD
        assert profile.household_id == household.id
        assert profile.guardian_verified is True
        assert profile.version == 1

        loaded = await engines.policies.get_child(profile.id, household.id)
        assert loaded.model_dump() == profile.model_dump()

    async def test_custom_template_leaves_defaults(self, engines):
        _, _, profile = await _new_child(engines)
        assert profile.version == 0
        assert profile.daily_limit == 10000

    async def test_other_household_sees_not_found(self, engines):
        _, _, profile = await _new_child(engines)
        with pytest.raises(ChildNotFoundError):
            await engines.policies.get_child(profile.id, uuid.uuid4())

    async def test_unknown_child(self, engines):
        with pytest.raises(ChildNotFoundError):
            await engines.policies.get_child(uuid.uuid4())

    async def test_list_children(self, engines):
        household, member, first = await _new_child(engines)
        second = await engines.policies.create_child(
            household.id, ChildCreate(name="Baraka", dob=date(2010, 1, 5), template=AgeTemplate.TEEN),
        )
        children = await engines.policies.list_children(household.id)
        assert {c.id for c in children} == {first.id, second.id}

    async def test_pin_creates_child_login(self, engines):
        _, _, profile = await _new_child(engines, pin="4321")
        found = await engines.repo.find_child_by_user(
            (await engines.repo._child_record(profile.id)).user_id
        )
        assert found.id == profile.id


class TestApplyPatch:
    async def test_patch_bumps_version_and_records_audit(self, engines):
        household, member, profile = await _new_child(engines)
        updated = await engines.policies.apply_patch(
            profile.id,
            {"daily_limit": 20000},
            audit_event=AuditNote(kind=ActivityKind.LIMIT_UPDATED, summary="Amani: daily limit 20,000"),
            actor_id=member.id,
        )
        assert updated.daily_limit == 20000
        assert updated.version == profile.version + 1
        assert ActivityKind.LIMIT_UPDATED in await engines.activity_kinds(household.id)

    async def test_nested_patch_keeps_siblings(self, engines):
        _, _, profile = await _new_child(engines)
        updated = await engines.policies.apply_patch(profile.id, {"curfew": {"enabled": True}})
        assert updated.curfew.enabled is True
        assert updated.curfew.start == profile.curfew.start

    async def test_noop_patch_changes_nothing(self, engines):
        _, _, profile = await _new_child(engines)
        same = await engines.policies.apply_patch(profile.id, {"daily_limit": profile.daily_limit})
        assert same.version == profile.version

    @pytest.mark.parametrize("patch, rule", [
        ({"not_a_field": 1}, "unknown_field"),
        ({"version": 99}, "immutable_field"),
        ({"household_id": str(uuid.uuid4())}, "immutable_field"),
        ({"daily_limit": -5}, "validation"),
        ({"daily_window": {"start": "25:00"}}, "validation"),
        ({"apps": {"unknown_app": True}}, "validation"),
    ])
    async def test_invalid_patch_rejected(self, engines, patch, rule):
        _, _, profile = await _new_child(engines)
        with pytest.raises(InvalidPatchError) as exc_info:
            await engines.policies.apply_patch(profile.id, patch)
        assert exc_info.value.rule == rule
        assert (await engines.policies.get_child(profile.id)).version == profile.version

    async def test_enable_charging_while_blocking_app_rejected(self, engines):
        _, _, profile = await _new_child(engines)
        with pytest.raises(InvalidPatchError) as exc_info:
            await engines.policies.apply_patch(profile.id, {
                "charging": {"enabled": True, "daily_kwh_cap": 5},
                "apps": {"evzone_charging": False},
            })
        assert exc_info.value.rule == "charging_app_blocked"

    async def test_coerced_strings_cannot_dodge_app_block(self, engines):
        _, _, profile = await _new_child(engines)
        with pytest.raises(InvalidPatchError) as exc_info:
            await engines.policies.apply_patch(profile.id, {
                "charging": {"enabled": "true", "daily_kwh_cap": 5},
                "apps": {"evzone_charging": "false"},
            })
        assert exc_info.value.rule == "charging_app_blocked"
        assert (await engines.policies.get_child(profile.id)).version == profile.version

    async def test_session_cap_above_daily_cap_rejected(self, engines):
        _, _, profile = await _new_child(engines)
        await engines.policies.apply_patch(profile.id, {"apps": {"evzone_charging": True}})
        with pytest.raises(InvalidPatchError) as exc_info:
            await engines.policies.apply_patch(profile.id, {
                "charging": {"enabled": True, "daily_kwh_cap": 5, "session_kwh_cap": 8},
            })
        assert exc_info.value.rule == "charging_session_cap"

    async def test_curfew_window_must_not_be_empty(self, engines):
        _, _, profile = await _new_child(engines)
        with pytest.raises(InvalidPatchError) as exc_info:
            await engines.policies.apply_patch(
                profile.id, {"curfew": {"enabled": True, "start": "21:00", "end": "21:00"}},
            )
        assert exc_info.value.rule == "curfew_window"

    async def test_blocking_charging_app_disables_charging(self, engines):
        household, _, profile = await _new_child(engines)
        await engines.policies.apply_patch(profile.id, {
            "apps": {"evzone_charging": True},
            "charging": {"enabled": True, "daily_kwh_cap": 10, "session_kwh_cap": 4},
        })

        updated = await engines.policies.apply_patch(profile.id, {"apps": {"evzone_charging": False}})

        assert updated.apps.evzone_charging is False
        assert updated.charging.enabled is False
        assert updated.charging.daily_kwh_cap == 10
        events = await engines.repo.load_activity(household.id)
        charging = [e for e in events if e.kind == ActivityKind.CHARGING_UPDATED]
        assert len(charging) == 1
        assert CHARGING_DISABLED_SUMMARY in charging[0].summary
        assert charging[0].severity == Severity.WARNING


class TestTemplates:
    async def test_apply_template_records_activity(self, engines):
        household, member, profile = await _new_child(engines)
        await engines.policies.apply_patch(profile.id, {"daily_limit": 50000})

        updated = await engines.policies.apply_template(profile.id, AgeTemplate.CHILD, actor_id=member.id)

        assert updated.daily_limit == 10000
        events = await engines.repo.load_activity(household.id)
        applied = [e for e in events if e.kind == ActivityKind.TEMPLATE_APPLIED]
        assert applied[0].summary == "Amani: applied Child (6-12) constraints"

    async def test_reapplying_template_is_idempotent(self, engines):
        _, _, profile = await _new_child(engines, template=AgeTemplate.TEEN)
        again = await engines.policies.apply_template(profile.id, AgeTemplate.TEEN)
        assert again.model_dump() == profile.model_dump()


class TestLifecycle:
    async def test_archive_then_writes_fail(self, engines):
        household, member, profile = await _new_child(engines)
        archived, code = await engines.policies.archive_child(profile.id, actor_id=member.id)

        assert archived.archived_at is not None
        assert archived.household_id is None
        assert code
        with pytest.raises(ChildArchivedError):
            await engines.policies.apply_patch(profile.id, {"daily_limit": 1})
        with pytest.raises(ChildNotFoundError):
            await engines.policies.get_child(profile.id, household.id)
        assert await engines.policies.list_children(household.id) == []

    async def test_link_archived_child_into_new_household(self, engines):
        _, _, profile = await _new_child(engines)
        _, code = await engines.policies.archive_child(profile.id)
        other, _, other_member = await engines.new_household("Okello Household")

        linked = await engines.policies.link_child(other.id, code.lower(), actor_id=other_member.id)

        assert linked.household_id == other.id
        assert linked.archived_at is None
        with pytest.raises(LinkCodeError):
            await engines.policies.link_child(other.id, code)

    async def test_unknown_link_code(self, engines):
        household, _, _ = await engines.new_household()
        with pytest.raises(LinkCodeError):
            await engines.policies.link_child(household.id, "ZZZZ-ZZZZ")
