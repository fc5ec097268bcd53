# backend/sca/models/resource.py
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from typing_extensions import Annotated


def _sorted_gids(v: List[int]) -> List[int]:
    # Group ids are kept sorted ascending; access checks rely on it
    return sorted(set(v))


SortedGids = Annotated[List[int], AfterValidator(_sorted_gids)]


class Principal(BaseModel):
    """Authenticated caller, built from the bearer token claims"""
    id: str
    gids: SortedGids = Field(default_factory=list)


class Resource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="_id")
    user_id: str
    resource_id: str
    name: Optional[str] = None
    type: Optional[str] = None
    gids: SortedGids = Field(default_factory=list)
    config: Dict[str, Any] = Field(default_factory=dict)
    active: bool = True
    status: Optional[str] = None
    status_msg: Optional[str] = None
    create_date: datetime = Field(default_factory=datetime.utcnow)
    update_date: datetime = Field(default_factory=datetime.utcnow)

    @property
    def username(self) -> Optional[str]:
        return self.config.get("username")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class ResourceCreate(BaseModel):
    """Body of POST /resource"""
    resource_id: str = Field(min_length=1)
    name: Optional[str] = None
    type: Optional[str] = None
    gids: SortedGids = Field(default_factory=list)
    config: Dict[str, Any] = Field(default_factory=dict)
    active: bool = True


class ResourceUpdate(BaseModel):
    """Body of PUT /resource/{id}; unset fields are left untouched"""
    resource_id: Optional[str] = Field(None, min_length=1)
    name: Optional[str] = None
    type: Optional[str] = None
    gids: Optional[SortedGids] = None
    config: Optional[Dict[str, Any]] = None
    active: Optional[bool] = None


class SSHKeyInstall(BaseModel):
    """Body of POST /resource/installsshkey"""
    host: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str
    pubkey: str = Field(min_length=1)
    comment: Optional[str] = None
