"""
Pydantic schemas mirroring the REST contract.
"""

from __future__ import annotations

from typing import Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, validator


class MediaFileRequest(BaseModel):
    file_path: str = Field(
        default="",
        validation_alias=AliasChoices("filePath", "file_path", "path"),
    )
    model_config = ConfigDict(populate_by_name=True)

    @validator("file_path", pre=True)
    def _coerce_path(cls, value: object) -> str:
        return "" if value is None else str(value)


class MediaControlRequest(BaseModel):
    action: str = ""

    @validator("action", pre=True)
    def _normalise_action(cls, value: object) -> str:
        return str(value or "").strip().lower()


class SeekRequest(BaseModel):
    # Left loose so the controller can reject bad values with its own message.
    time_ms: Union[float, str, None] = Field(
        default=None,
        validation_alias=AliasChoices("timeMs", "time_ms"),
    )
    model_config = ConfigDict(populate_by_name=True)


class SceneRequest(BaseModel):
    scene_name: str = Field(
        default="",
        validation_alias=AliasChoices("sceneName", "scene_name", "scene"),
    )
    model_config = ConfigDict(populate_by_name=True)


class SettingsUpdate(BaseModel):
    media_dir: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("mediaDir", "media_dir", "MEDIA_DIR"),
    )
    obs_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("obsUrl", "obs_url", "OBS_URL"),
    )
    obs_password: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("obsPassword", "obs_password", "OBS_PASSWORD"),
    )
    target_scene: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("targetScene", "target_scene", "OBS_TARGET_SCENE"),
    )
    model_config = ConfigDict(populate_by_name=True)
