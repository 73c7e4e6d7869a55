"""Policy Template Resolver.

Maps an age template onto a partial policy patch for a given child. The
result is a plain overlay dict in the shape the policy store accepts:
nested objects only carry the keys that change.

Resolution is pure: no I/O, no clock, the same template and profile always
give the same patch, and applying the patch twice equals applying it once.
"""

from app.schemas.policy import AgeTemplate, AppKey, ChildProfile, SchedulePreset

BASE_CATEGORY_BLOCKS = ("Adult", "Alcohol", "Gambling")

CHILD_DAILY_CAP = 10000
CHILD_WEEKLY_CAP = 40000
CHILD_APPROVAL_THRESHOLD = 5000

TEEN_DAILY_FLOOR = 15000
TEEN_WEEKLY_FLOOR = 80000
TEEN_APPROVAL_THRESHOLD = 15000

YOUNG_ADULT_APPROVAL_FLOOR = 20000

CHILD_ALLOWED_APPS = frozenset({AppKey.EVZONE_SCHOOL, AppKey.EDUMART, AppKey.SHOPNOW})
TEEN_ALLOWED_APPS = (
    AppKey.EVZONE_SCHOOL, AppKey.EDUMART, AppKey.EVZONE_MARKETPLACE, AppKey.SHOPNOW,
)

_PRIVACY_DEFAULTS = {
    "marketing_opt_out": True,
    "public_profile": False,
    "location_sharing": True,
}


def _capped(current: int, cap: int) -> int:
    """``min(current, cap)``, with an unset (zero) limit falling back to the cap."""
    return min(current, cap) or cap


def _category_blocks(current: list[str]) -> list[str]:
    """Base blocks first, then the child's own, without duplicates."""
    return list(dict.fromkeys([*BASE_CATEGORY_BLOCKS, *current]))


def _child_patch(current: ChildProfile) -> dict:
    return {
        "template": AgeTemplate.CHILD,
        "daily_limit": _capped(current.daily_limit, CHILD_DAILY_CAP),
        "weekly_limit": _capped(current.weekly_limit, CHILD_WEEKLY_CAP),
        "require_approval_above": CHILD_APPROVAL_THRESHOLD,
        "require_approval_for_all_purchases": True,
        "allow_withdrawals": False,
        "allow_peer_transfers": False,
        "allow_saved_cards": False,
        "allow_unknown_contacts": False,
        "allow_attachments": False,
        "allow_voice_calls": False,
        "preset": SchedulePreset.SCHOOL_DAYS,
        "daily_window": {"start": "06:00", "end": "20:00"},
        "bedtime_lock": True,
        **_PRIVACY_DEFAULTS,
        "apps": {app.value: app in CHILD_ALLOWED_APPS for app in AppKey},
        "category_blocks": _category_blocks(current.category_blocks),
        "curfew": {
            "enabled": True,
            "start": "20:30",
            "end": "06:00",
            "hard_lock": True,
            "allow_school_only_during_curfew": True,
        },
        "geofences": {"enabled": True, "alerts_on_enter_leave": True},
    }


def _teen_patch(current: ChildProfile) -> dict:
    preset = current.preset
    if preset == SchedulePreset.ALWAYS_ALLOWED:
        preset = SchedulePreset.CUSTOM
    return {
        "template": AgeTemplate.TEEN,
        "daily_limit": max(current.daily_limit, TEEN_DAILY_FLOOR),
        "weekly_limit": max(current.weekly_limit, TEEN_WEEKLY_FLOOR),
        "require_approval_above": TEEN_APPROVAL_THRESHOLD,
        "require_approval_for_all_purchases": False,
        "allow_withdrawals": False,
        "allow_peer_transfers": False,
        "allow_saved_cards": False,
        "allow_unknown_contacts": False,
        "allow_attachments": True,
        "allow_voice_calls": False,
        "preset": preset,
        "bedtime_lock": True,
        **_PRIVACY_DEFAULTS,
        "apps": {app.value: True for app in TEEN_ALLOWED_APPS},
        "category_blocks": _category_blocks(current.category_blocks),
        "curfew": {
            "enabled": True,
            "start": "21:30",
            "end": "06:00",
            "hard_lock": False,
            "allow_school_only_during_curfew": False,
        },
        "geofences": {"enabled": True, "alerts_on_enter_leave": True},
    }


def _young_adult_patch(current: ChildProfile) -> dict:
    # Wallet permission flags are left as the guardian set them
    return {
        "template": AgeTemplate.YOUNG_ADULT,
        "require_approval_for_all_purchases": False,
        "require_approval_above": max(YOUNG_ADULT_APPROVAL_FLOOR, current.require_approval_above),
        "allow_attachments": True,
        "allow_voice_calls": True,
        "bedtime_lock": False,
        "curfew": {"enabled": False},
        "geofences": {"enabled": False},
    }


_RESOLVERS = {
    AgeTemplate.CHILD: _child_patch,
    AgeTemplate.TEEN: _teen_patch,
    AgeTemplate.YOUNG_ADULT: _young_adult_patch,
}


def resolve_template(template: AgeTemplate, current: ChildProfile) -> dict:
    """Return the policy patch that moves ``current`` onto ``template``.

    ``custom`` only records the template choice and changes nothing else.
    """
    template = AgeTemplate(template)
    resolver = _RESOLVERS.get(template)
    if resolver is None:
        return {"template": template}
    return resolver(current)
