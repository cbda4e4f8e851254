"""Data models shared by the campsite fetch and cache layer."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Literal, Optional

CampsiteType = Literal["campsite", "aire", "parking", "caravan_site"]
Completeness = Literal["minimal", "basic", "detailed"]

CAMPSITE_TYPES: tuple[str, ...] = ("campsite", "aire", "parking", "caravan_site")
DEFAULT_TYPES: tuple[str, ...] = ("campsite", "aire", "caravan_site")
DEFAULT_MAX_RESULTS = 1000


@dataclass(slots=True, frozen=True)
class BoundingBox:
    """A lat/lon rectangle in WGS84 degrees."""

    north: float
    south: float
    east: float
    west: float

    @property
    def center(self) -> tuple[float, float]:
        return (self.north + self.south) / 2, (self.east + self.west) / 2

    @property
    def area(self) -> float:
        return (self.north - self.south) * (self.east - self.west)

    def to_dict(self) -> dict[str, float]:
        return {"north": self.north, "south": self.south, "east": self.east, "west": self.west}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BoundingBox":
        return cls(
            north=float(data["north"]),
            south=float(data["south"]),
            east=float(data["east"]),
            west=float(data["west"]),
        )


@dataclass(slots=True, frozen=True)
class VehicleFilter:
    """Vehicle profile used to exclude sites the vehicle cannot use."""

    height: Optional[float] = None  # metres
    length: Optional[float] = None  # metres
    weight: Optional[float] = None  # tonnes
    motorhome: bool = False
    caravan: bool = False


@dataclass(slots=True)
class Amenities:
    toilets: bool = False
    showers: bool = False
    drinking_water: bool = False
    electricity: bool = False
    wifi: bool = False
    restaurant: bool = False
    shop: bool = False
    playground: bool = False
    laundry: bool = False
    swimming_pool: bool = False
    sanitary_dump_station: bool = False
    waste_disposal: bool = False
    hot_water: bool = False
    kitchen: bool = False
    picnic_table: bool = False
    bbq: bool = False


AMENITY_NAMES: tuple[str, ...] = tuple(f.name for f in fields(Amenities))


@dataclass(slots=True)
class Access:
    motorhome: bool = False
    caravan: bool = False
    tent: bool = False
    max_height: Optional[float] = None
    max_length: Optional[float] = None
    max_weight: Optional[float] = None


@dataclass(slots=True)
class Contact:
    phone: Optional[str] = None
    website: Optional[str] = None
    email: Optional[str] = None


@dataclass(slots=True)
class Policies:
    dogs: Optional[str] = None
    fires: bool = False
    bbq: bool = False
    nudism: bool = False


@dataclass(slots=True)
class CapacityDetails:
    pitches: Optional[float] = None
    tents: Optional[float] = None
    caravans: Optional[float] = None


@dataclass(slots=True)
class StructuredAddress:
    street: Optional[str] = None
    city: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None


@dataclass(slots=True)
class Campsite:
    """A campsite, aire or overnight parking spot normalised from OSM."""

    id: int
    type: CampsiteType
    name: str
    lat: float
    lng: float
    amenities: Amenities = field(default_factory=Amenities)
    access: Access = field(default_factory=Access)
    contact: Contact = field(default_factory=Contact)
    source: str = "openstreetmap"
    last_updated: float = 0.0
    osm_id: Optional[int] = None
    opening_hours: Optional[str] = None
    fee: Optional[str] = None
    reservation: Optional[str] = None
    capacity: Optional[float] = None
    stars: Optional[float] = None
    description: Optional[str] = None
    operator: Optional[str] = None
    image_url: Optional[str] = None
    power_supply: Optional[str] = None
    address: Optional[str] = None
    policies: Policies = field(default_factory=Policies)
    capacity_details: CapacityDetails = field(default_factory=CapacityDetails)
    structured_address: StructuredAddress = field(default_factory=StructuredAddress)
    data_completeness: Completeness = "minimal"
    quality_score: Optional[float] = None
    vehicle_compatible: Optional[bool] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Campsite":
        values = dict(data)
        values["amenities"] = Amenities(**(values.get("amenities") or {}))
        values["access"] = Access(**(values.get("access") or {}))
        values["contact"] = Contact(**(values.get("contact") or {}))
        values["policies"] = Policies(**(values.get("policies") or {}))
        values["capacity_details"] = CapacityDetails(**(values.get("capacity_details") or {}))
        values["structured_address"] = StructuredAddress(**(values.get("structured_address") or {}))
        return cls(**values)


@dataclass(slots=True)
class CampsiteRequest:
    """A bounds (or free-text location) query for campsites."""

    bounds: Optional[BoundingBox] = None
    types: tuple[str, ...] = DEFAULT_TYPES
    amenities: tuple[str, ...] = ()
    max_results: int = DEFAULT_MAX_RESULTS
    vehicle_filter: Optional[VehicleFilter] = None
    location_query: Optional[str] = None


@dataclass(slots=True)
class GeocodeResult:
    display_name: str
    lat: float
    lng: float
    boundingbox: tuple[str, ...]
    type: str
    importance: float
    name: Optional[str] = None
    subtitle: Optional[str] = None


@dataclass(slots=True)
class CampsiteMetadata:
    service: str
    timestamp: float
    query: CampsiteRequest
    results_count: int
    cache_hit: bool
    query_duration: float  # milliseconds
    geocoded_location: Optional[GeocodeResult] = None


@dataclass(slots=True)
class CampsiteResponse:
    campsites: list[Campsite]
    metadata: CampsiteMetadata
    cached: bool
    bounding_box: Optional[BoundingBox]
    status: str = "success"
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
