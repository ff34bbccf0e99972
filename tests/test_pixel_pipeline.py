"""Tests for the pixel stages: normalize, clarify, stabilize and repair."""

from __future__ import annotations

from PIL import Image

from spritegate.clarifier import clarify_pixel_art
from spritegate.normalizer import contain_resize, normalize_sprite_sheet
from spritegate.repair import (
    FrameOccupancy,
    find_frame_occupancy,
    repair_empty_frames,
    select_nearest_donor,
)
from spritegate.stabilizer import stabilize_sprite_sheet

from sprite_sheets import DEFAULT_FRAMES, DEFAULT_SIZE, walker_sheet


def _visible(image: Image.Image, box: tuple[int, int, int, int]) -> int:
    """Count pixels with alpha above the visibility cutoff inside *box*."""
    alpha = image.crop(box).getchannel("A").tobytes()
    return sum(1 for a in alpha if a > 16)


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class TestNormalizer:
    def test_exact_sheet_unchanged(self) -> None:
        sheet = walker_sheet()
        result = normalize_sprite_sheet(sheet, DEFAULT_SIZE, DEFAULT_FRAMES, 1)
        assert result.size == sheet.size
        assert result.tobytes() == sheet.tobytes()

    def test_backend_canvas_resized_to_grid(self) -> None:
        raw = walker_sheet().resize((1536, 1024), Image.Resampling.NEAREST)
        result = normalize_sprite_sheet(raw, DEFAULT_SIZE, DEFAULT_FRAMES, 1)
        assert result.size == (DEFAULT_SIZE * DEFAULT_FRAMES, DEFAULT_SIZE)
        assert result.mode == "RGBA"
        for index in range(DEFAULT_FRAMES):
            box = (index * DEFAULT_SIZE, 0, (index + 1) * DEFAULT_SIZE, DEFAULT_SIZE)
            assert _visible(result, box) > 0

    def test_tiny_source_stretched(self) -> None:
        raw = Image.new("RGBA", (2, 1), (255, 0, 0, 255))
        result = normalize_sprite_sheet(raw, 32, 4, 1)
        assert result.size == (128, 32)

    def test_rgb_input_converted(self) -> None:
        raw = Image.new("RGB", (256, 64), (10, 20, 30))
        assert normalize_sprite_sheet(raw, 32, 4, 2).mode == "RGBA"

    def test_contain_resize_centers(self) -> None:
        wide = Image.new("RGBA", (64, 32), (255, 255, 255, 255))
        cell = contain_resize(wide, 32)
        assert cell.size == (32, 32)
        assert cell.getpixel((16, 0))[3] == 0
        assert cell.getpixel((16, 16))[3] == 255


# ---------------------------------------------------------------------------
# Clarifier
# ---------------------------------------------------------------------------


class TestClarifier:
    def test_hard_alpha_and_quantized_channels(self) -> None:
        image = Image.new("RGBA", (3, 1))
        image.putpixel((0, 0), (0x37, 0x8F, 0xFF, 200))
        image.putpixel((1, 0), (200, 200, 200, 16))
        image.putpixel((2, 0), (1, 2, 3, 17))
        result = clarify_pixel_art(image)
        assert result.getpixel((0, 0)) == (0x30, 0x80, 0xF0, 255)
        assert result.getpixel((1, 0)) == (0, 0, 0, 0)
        assert result.getpixel((2, 0)) == (0, 0, 0, 255)

    def test_size_preserved_and_idempotent(self) -> None:
        sheet = walker_sheet()
        once = clarify_pixel_art(sheet)
        assert once.size == sheet.size
        assert clarify_pixel_art(once).tobytes() == once.tobytes()


# ---------------------------------------------------------------------------
# Stabilizer
# ---------------------------------------------------------------------------


class TestStabilizer:
    def test_centered_sheet_is_fixed_point(self) -> None:
        sheet = walker_sheet()
        result = stabilize_sprite_sheet(sheet, DEFAULT_SIZE, DEFAULT_FRAMES, 1, DEFAULT_FRAMES)
        assert result.tobytes() == sheet.tobytes()

    def test_idempotent_after_recentering(self) -> None:
        sheet = walker_sheet(shifts={0: -6, 2: 5})
        once = stabilize_sprite_sheet(sheet, DEFAULT_SIZE, DEFAULT_FRAMES, 1, DEFAULT_FRAMES)
        twice = stabilize_sprite_sheet(once, DEFAULT_SIZE, DEFAULT_FRAMES, 1, DEFAULT_FRAMES)
        assert once.tobytes() == twice.tobytes()

    def test_drifting_frames_share_anchor(self) -> None:
        sheet = walker_sheet(shifts={0: -6, 2: 5})
        result = stabilize_sprite_sheet(sheet, DEFAULT_SIZE, DEFAULT_FRAMES, 1, DEFAULT_FRAMES)
        lefts = []
        for index in range(DEFAULT_FRAMES):
            frame = result.crop(
                (index * DEFAULT_SIZE, 0, (index + 1) * DEFAULT_SIZE, DEFAULT_SIZE)
            )
            bbox = frame.getchannel("A").getbbox()
            assert bbox is not None
            lefts.append(bbox[0])
        assert len(set(lefts)) == 1

    def test_oversized_content_scaled_into_inset(self) -> None:
        sheet = Image.new("RGBA", (64, 32), (0, 0, 0, 0))
        for x in range(0, 32):
            for y in range(0, 32):
                sheet.putpixel((x, y), (240, 0, 0, 255))
        result = stabilize_sprite_sheet(sheet, 32, 2, 1, 1)
        bbox = result.getchannel("A").getbbox()
        assert bbox is not None
        assert bbox[0] >= 2 and bbox[1] >= 2
        assert bbox[2] <= 30 and bbox[3] <= 30

    def test_unused_slots_cleared(self) -> None:
        sheet = walker_sheet(frames=4, columns=4)
        result = stabilize_sprite_sheet(sheet, DEFAULT_SIZE, 4, 1, 2)
        assert _visible(result, (64, 0, 128, 32)) == 0
        assert _visible(result, (0, 0, 64, 32)) > 0

    def test_blank_sheet_returned_unchanged(self) -> None:
        blank = Image.new("RGBA", (64, 32), (0, 0, 0, 0))
        assert stabilize_sprite_sheet(blank, 32, 2, 1, 2) is blank


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------


class TestRepair:
    def test_no_empty_frames_is_noop(self) -> None:
        sheet = walker_sheet()
        result = repair_empty_frames(sheet, DEFAULT_SIZE, DEFAULT_FRAMES, 1, DEFAULT_FRAMES)
        assert result.repaired_frames == []
        assert result.repaired_slots == 0
        assert result.image is sheet

    def test_fills_empty_frame_from_nearest_donor(self) -> None:
        sheet = walker_sheet(empty=(2,))
        result = repair_empty_frames(sheet, DEFAULT_SIZE, DEFAULT_FRAMES, 1, DEFAULT_FRAMES)
        assert result.repaired_frames == [2]
        assert _visible(result.image, (64, 0, 96, 32)) > 0
        # Donor frames are untouched.
        assert result.image.crop((0, 0, 64, 32)).tobytes() == sheet.crop((0, 0, 64, 32)).tobytes()

    def test_repaired_copy_is_not_pixel_identical(self) -> None:
        sheet = walker_sheet(empty=(2,))
        repaired = repair_empty_frames(sheet, DEFAULT_SIZE, DEFAULT_FRAMES, 1, DEFAULT_FRAMES).image
        donor = repaired.crop((32, 0, 64, 32)).tobytes()
        filled = repaired.crop((64, 0, 96, 32)).tobytes()
        assert donor != filled

    def test_all_empty_is_noop(self) -> None:
        blank = Image.new("RGBA", (128, 32), (0, 0, 0, 0))
        result = repair_empty_frames(blank, 32, 4, 1, 4)
        assert result.repaired_frames == []

    def test_occupancy_counts(self) -> None:
        sheet = walker_sheet(empty=(1,))
        data = sheet.tobytes()
        frames = find_frame_occupancy(data, 128, 32, 32, 4, 1, 4)
        assert [f.pixel_count for f in frames] == [252, 0, 252, 252]
        assert (frames[0].min_x, frames[0].min_y, frames[0].max_x, frames[0].max_y) == (
            10,
            6,
            21,
            29,
        )

    def test_nearest_donor_prefers_earliest_on_tie(self) -> None:
        donors = [
            FrameOccupancy(1, 32, 0, 10, 0, 0, 1, 1),
            FrameOccupancy(3, 96, 0, 10, 0, 0, 1, 1),
        ]
        assert select_nearest_donor(2, donors).frame_index == 1
        assert select_nearest_donor(4, donors).frame_index == 3
