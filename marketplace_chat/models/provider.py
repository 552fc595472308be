from typing import Optional, TypedDict


class ProviderDocument(TypedDict, total=False):
    _id: str
    # owning user identity
    user_id: str
    business_name: str
    profile_picture_url: Optional[str]
    service_type: Optional[str]


class ProfileDocument(TypedDict, total=False):
    _id: str
    user_id: str
    display_name: Optional[str]
    avatar_url: Optional[str]
