# ----------------- Request models -----------------
from dataclasses import dataclass
from typing import List, Optional, Union

from pydantic import BaseModel, Field, HttpUrl


class ClipRef(BaseModel):
    url: HttpUrl


class OutputSpec(BaseModel):
    width: int = Field(1080, gt=0)
    height: int = Field(1920, gt=0)
    fps: int = Field(30, gt=0)


class OverlaySpec(BaseModel):
    logo_url: Optional[HttpUrl] = None
    logo_position: str = "top_center"   # top_center, top_left, top_right, center, bottom_center
    logo_size: int = Field(120, gt=0)   # logo width in px
    text: Optional[str] = None
    text_position: str = "safe_center"  # safe_top, safe_center, safe_bottom
    font_size: int = Field(42, gt=0)
    font_color: str = "white"
    text_bg: str = "black@0.5"
    font_url: Optional[HttpUrl] = None
    font_name: Optional[str] = None

    @property
    def has_content(self) -> bool:
        return bool(self.logo_url or self.text)


class ProcessRequest(BaseModel):
    clips: List[ClipRef] = Field(default_factory=list)
    crossfade: float = Field(0.4, ge=0)
    output: OutputSpec = Field(default_factory=OutputSpec)
    overlay: OverlaySpec = Field(default_factory=OverlaySpec)
    audio_url: Optional[HttpUrl] = None
    audio_data: Optional[str] = None  # base64
    fade_in: float = Field(0.5, ge=0)
    fade_out: float = Field(0.5, ge=0)

    @property
    def has_fades(self) -> bool:
        return self.fade_in > 0 or self.fade_out > 0


class UploadRequest(BaseModel):
    data: Optional[str] = None  # base64
    filename: Optional[str] = None


class ProbeRequest(BaseModel):
    url: HttpUrl


# ----------------- Audio source variant -----------------

@dataclass(frozen=True)
class AudioUrl:
    url: str


@dataclass(frozen=True)
class InlineAudio:
    data: bytes


AudioSource = Union[AudioUrl, InlineAudio]
