"""Child policy schemas.

``ChildProfile`` is the authoritative, fully validated policy of one
supervised child. Patches are partial dicts of the same shape; nested
objects in a patch only carry the keys that change.
"""

import uuid
from datetime import date, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.activity import ActivityKind, Severity

HHMM_PATTERN = r"^([01][0-9]|2[0-3]):[0-5][0-9]$"


class AgeTemplate(StrEnum):
    CHILD = "child"
    TEEN = "teen"
    YOUNG_ADULT = "young_adult"
    CUSTOM = "custom"

    @property
    def label(self) -> str:
        return {
            "child": "Child (6-12)",
            "teen": "Teen (13-17)",
            "young_adult": "Young adult (18+)",
            "custom": "Custom",
        }[self.value]


class ChildStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"


class SchedulePreset(StrEnum):
    SCHOOL_DAYS = "school_days"
    WEEKEND = "weekend"
    ALWAYS_ALLOWED = "always_allowed"
    CUSTOM = "custom"


class AppKey(StrEnum):
    """Every app a guardian can allow or block. ``AppPermissions`` has one field per member."""

    EVZONE_SCHOOL = "evzone_school"
    EDUMART = "edumart"
    EVZONE_MARKETPLACE = "evzone_marketplace"
    EVZONE_CHARGING = "evzone_charging"
    SERVICEMART = "servicemart"
    SHOPNOW = "shopnow"
    PROPERTIES = "properties"
    FASHION = "fashion"
    ART = "art"

    @property
    def label(self) -> str:
        return _APP_LABELS[self]


_APP_LABELS = {
    AppKey.EVZONE_SCHOOL: "EVzone School",
    AppKey.EDUMART: "EduMart",
    AppKey.EVZONE_MARKETPLACE: "EVzone Marketplace",
    AppKey.EVZONE_CHARGING: "EVzone Charging",
    AppKey.SERVICEMART: "ServiceMart",
    AppKey.SHOPNOW: "ShopNow",
    AppKey.PROPERTIES: "Properties",
    AppKey.FASHION: "Fashion",
    AppKey.ART: "Art",
}


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class TimeWindow(_Strict):
    start: str = Field("06:00", pattern=HHMM_PATTERN)
    end: str = Field("20:00", pattern=HHMM_PATTERN)


class Curfew(_Strict):
    enabled: bool = False
    start: str = Field("20:30", pattern=HHMM_PATTERN)
    end: str = Field("06:00", pattern=HHMM_PATTERN)
    hard_lock: bool = False
    allow_school_only_during_curfew: bool = False


class Place(_Strict):
    label: str = Field(pattern="^(Home|School)$")
    address: str
    radius_km: float = Field(2.0, gt=0, le=50)


class GeoFences(_Strict):
    enabled: bool = False
    alerts_on_enter_leave: bool = False
    home: Place | None = None
    school: Place | None = None


class AppPermissions(_Strict):
    evzone_school: bool = True
    edumart: bool = True
    evzone_marketplace: bool = False
    evzone_charging: bool = False
    servicemart: bool = False
    shopnow: bool = False
    properties: bool = False
    fashion: bool = False
    art: bool = False

    def is_allowed(self, app: AppKey) -> bool:
        return getattr(self, app.value)


class ChargingControls(_Strict):
    enabled: bool = False
    daily_kwh_cap: float = Field(0, ge=0)
    session_kwh_cap: float = Field(0, ge=0)
    require_approval_above_kwh: float = Field(0, ge=0)
    allowed_stations: list[str] = Field(default_factory=list)


class NotificationChannels(_Strict):
    email: bool = True
    sms: bool = True
    whatsapp: bool = False


class ChildProfile(BaseModel):
    """Identity plus the full behavioural policy of a supervised child."""

    model_config = ConfigDict(extra="forbid", from_attributes=True)

    id: uuid.UUID
    household_id: uuid.UUID | None = None
    name: str = Field(min_length=1, max_length=100)
    dob: date
    school: str | None = None
    grade: str | None = None
    country: str = ""
    status: ChildStatus = ChildStatus.ACTIVE
    guardian_verified: bool = False
    consent_version: str = "v1.0"
    consent_at: datetime | None = None
    template: AgeTemplate = AgeTemplate.CUSTOM
    guardian_relationship: str = Field("parent", pattern="^(parent|guardian)$")

    # Wallet
    currency: str = Field("UGX", min_length=3, max_length=3)
    daily_limit: int = Field(10000, ge=0)
    weekly_limit: int = Field(40000, ge=0)
    require_approval_above: int = Field(5000, ge=0)
    require_approval_for_all_purchases: bool = False
    allow_withdrawals: bool = False
    allow_peer_transfers: bool = False
    allow_saved_cards: bool = False
    category_blocks: list[str] = Field(default_factory=lambda: ["Adult", "Alcohol", "Gambling"])
    seller_whitelist: list[str] = Field(default_factory=list)

    # Communication
    allow_teacher_mentor_chat: bool = True
    allow_attachments: bool = False
    allow_voice_calls: bool = False
    allow_unknown_contacts: bool = False

    # Notifications
    guardian_channels: NotificationChannels = Field(default_factory=NotificationChannels)

    # Schedule
    preset: SchedulePreset = SchedulePreset.SCHOOL_DAYS
    daily_window: TimeWindow = Field(default_factory=TimeWindow)
    bedtime_lock: bool = True
    curfew: Curfew = Field(default_factory=Curfew)
    geofences: GeoFences = Field(default_factory=GeoFences)
    apps: AppPermissions = Field(default_factory=AppPermissions)
    charging: ChargingControls = Field(default_factory=ChargingControls)

    # Privacy
    location_sharing: bool = False
    public_profile: bool = False
    marketing_opt_out: bool = True

    version: int = 0
    archived_at: datetime | None = None


# Policy fields that only ever change through dedicated flows
IMMUTABLE_FIELDS = frozenset({"id", "household_id", "version", "archived_at"})

# Nested objects whose patch keys overlay the existing keys
NESTED_FIELDS = frozenset({
    "daily_window", "curfew", "geofences", "apps", "charging", "guardian_channels",
})

# Columns kept on the child_profiles row; everything else lives in its policy JSON
IDENTITY_FIELDS = (
    "id", "household_id", "name", "dob", "school", "grade", "country", "status",
    "guardian_verified", "consent_version", "consent_at", "template",
    "guardian_relationship", "currency", "version", "archived_at",
)


class AuditNote(BaseModel):
    """Activity entry a caller attaches to a policy patch."""

    kind: ActivityKind
    summary: str
    severity: Severity = Severity.INFO


class ChildCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    dob: date
    school: str | None = "EVzone School"
    grade: str | None = None
    country: str = ""
    currency: str = Field("UGX", min_length=3, max_length=3)
    template: AgeTemplate = AgeTemplate.CHILD
    pin: str | None = Field(None, pattern="^[0-9]{4,6}$")


class ChildLinkRequest(BaseModel):
    code: str = Field(min_length=4, max_length=20)


class ChildPatchRequest(BaseModel):
    """A partial ``ChildProfile``; validated by the policy store after merging."""

    patch: dict = Field(min_length=1)
    audit: AuditNote | None = None


class TemplateApplyRequest(BaseModel):
    template: AgeTemplate
