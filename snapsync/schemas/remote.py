"""Schemas for data returned by the remote storage collaborator."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from snapsync.services.datetime_service import parse_datetime


class RemoteMetadata(BaseModel):
    """Metadata of one remote folder or file, as returned by a folder listing.

    Folders listed recursively carry their children in ``contents``.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    path: str = ""
    created: datetime
    modified: datetime
    is_folder: bool = Field(default=False, alias="isfolder")
    is_deleted: bool = Field(default=False, alias="isdeleted")
    deleted_file_id: int = Field(default=0, alias="deletedfileid")
    parent_folder_id: int = Field(default=0, alias="parentfolderid")
    folder_id: int = Field(default=0, alias="folderid")
    file_id: int = Field(default=0, alias="fileid")
    size: int = 0
    hash: int = 0
    contents: list[RemoteMetadata] = Field(default_factory=list)

    @field_validator("created", "modified", mode="before")
    @classmethod
    def parse_api_time(cls, value: object) -> object:
        """Accept the RFC 2822 timestamps the API sends."""
        if isinstance(value, str):
            return parse_datetime(value)
        return value

    @property
    def entry_id(self) -> int:
        return self.folder_id if self.is_folder else self.file_id


class RemoteFolderListing(BaseModel):
    """Response of a folder listing call."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    result: int = 0
    metadata: RemoteMetadata


class RemoteFile(BaseModel):
    """An open remote file descriptor."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    result: int = 0
    fd: int
    file_id: int = Field(default=0, alias="fileid")
