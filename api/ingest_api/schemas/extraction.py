from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SiteStatus = Literal["active", "404", "down", "error", "unknown"]


class ExtractedLocation(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    address: str = ""
    airport_code: str | None = Field(default=None, alias="airportCode")
    city: str | None = None
    state: str | None = None


class TypicalTimeline(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    min_months: float | None = Field(default=None, alias="minMonths")
    max_months: float | None = Field(default=None, alias="maxMonths")


class ExtractedSchoolData(BaseModel):
    """Structured payload the extraction model must return for a crawled site."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    programs: list[str] = Field(default_factory=list)
    pricing: list[str] = Field(default_factory=list)
    fleet: list[str] = Field(default_factory=list)
    location: str | None = None
    contact: str | None = None
    email: str | None = None
    phone: str | None = None
    locations: list[ExtractedLocation] = Field(default_factory=list)
    financing_available: bool | None = Field(default=None, alias="financingAvailable")
    financing_url: str | None = Field(default=None, alias="financingUrl")
    financing_types: list[str] = Field(default_factory=list, alias="financingTypes")
    training_type: list[str] = Field(default_factory=list, alias="trainingType")
    simulator_available: bool | None = Field(default=None, alias="simulatorAvailable")
    instructor_count: str | None = Field(default=None, alias="instructorCount")
    typical_timeline: TypicalTimeline | None = Field(default=None, alias="typicalTimeline")
    site_status: SiteStatus | None = Field(default=None, alias="siteStatus")

    @field_validator(
        "programs",
        "pricing",
        "fleet",
        "locations",
        "financing_types",
        "training_type",
        mode="before",
    )
    @classmethod
    def _null_list_to_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("instructor_count", mode="before")
    @classmethod
    def _count_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("site_status", mode="before")
    @classmethod
    def _unknown_site_status(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        if isinstance(value, int) and value == 404:
            return "404"
        if value not in ("active", "404", "down", "error", "unknown"):
            return "unknown"
        return value

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
