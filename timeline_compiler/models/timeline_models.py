"""
Pydantic models for the editor's timeline snapshot.

This module defines the data contract handed to the compilation engine:
- ClipReference: a trimmed window of a source asset placed on the timeline
- SourceAsset: a local media file referenced by one or more clips
- Timeline: ordered clip placements plus the asset library they reference

The models carry no compile logic. Validation of trim windows against
configured limits happens in the orchestrator so that bad input surfaces
as a ValidationError instead of a model error.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


# =============================================================================
# SOURCE ASSETS
# =============================================================================


class SourceAsset(BaseModel):
    """A binary media file available on the local machine."""

    asset_id: str = Field(description="Editor-side asset identifier")
    name: str = Field(description="Original file name")
    path: str = Field(description="Local filesystem path of the media file")
    size_bytes: int = Field(ge=0, description="File size in bytes")
    duration_seconds: float | None = Field(
        default=None, ge=0, description="Media duration once probed (None = unknown)"
    )
    content_hash: str | None = Field(
        default=None, description="Precomputed SHA-256 of the file content"
    )


# =============================================================================
# CLIPS
# =============================================================================


class ClipReference(BaseModel):
    """
    A trimmed reference into a source asset placed at a timeline offset.

    Examples:
        - First two seconds of an asset at the start of the timeline:
          ClipReference(id="c1", source_asset_id="a1",
                        trim_start_seconds=0, trim_duration_seconds=2,
                        timeline_position_seconds=0)
    """

    id: str = Field(description="Unique clip identifier")
    source_asset_id: str = Field(description="Asset this clip is cut from")
    trim_start_seconds: float = Field(default=0.0, description="Trim-in point")
    trim_duration_seconds: float = Field(description="Length of the trim window")
    timeline_position_seconds: float = Field(
        default=0.0, description="Placement on the timeline"
    )
    label: str | None = Field(default=None, description="Display name for the clip")

    @property
    def trim_end_seconds(self) -> float:
        return self.trim_start_seconds + self.trim_duration_seconds

    @property
    def display_label(self) -> str:
        return self.label or self.id


# =============================================================================
# TIMELINE
# =============================================================================


class Timeline(BaseModel):
    """Ordered clip placements and the source library they reference."""

    clips: list[ClipReference] = Field(default_factory=list)
    assets: dict[str, SourceAsset] = Field(
        default_factory=dict, description="asset_id -> SourceAsset"
    )

    def sorted_clips(self) -> list[ClipReference]:
        """Clips ordered by timeline position; ties keep their input order."""
        return sorted(self.clips, key=lambda clip: clip.timeline_position_seconds)

    def get_asset(self, asset_id: str) -> SourceAsset | None:
        return self.assets.get(asset_id)

    def referenced_assets(self) -> list[SourceAsset]:
        """Assets used by at least one clip, in timeline order, without repeats."""
        seen: set[str] = set()
        assets: list[SourceAsset] = []
        for clip in self.sorted_clips():
            if clip.source_asset_id in seen:
                continue
            asset = self.assets.get(clip.source_asset_id)
            if asset is None:
                continue
            seen.add(clip.source_asset_id)
            assets.append(asset)
        return assets

    @property
    def duration_seconds(self) -> float:
        return sum(clip.trim_duration_seconds for clip in self.clips)

    def snapshot(self) -> Timeline:
        """Deep copy, so later edits to the source timeline have no effect."""
        return self.model_copy(deep=True)
