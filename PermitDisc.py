#!/usr/bin/env python3

"""
Permit Disc Generator
Lays out vehicle permit discs and renders them for screen preview, print and PDF export.
Every output is the same physical object: a 90mm disc with a registration number and a Code 128 barcode.

Table of Contents
   1. Setup
   2. Barcode Encoding
   3. Layout Engine
   4. Drawing Functions
   5. PDF Export
   6. Export Coordination
   7. Commands
"""

# ----------------------1. Setup----------------------------

import asyncio
import base64
import io
import logging
import math
import os
import re
import tempfile
import time
import webbrowser
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import cache
from pathlib import Path
from urllib.parse import unquote_to_bytes

import requests
import toml
from PIL import Image, ImageChops, ImageColor, ImageDraw, ImageFont, ImageOps
import drawsvg as svg
from barcode.codex import Code128
from reportlab.lib.pagesizes import A4, A5, LETTER
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

logger = logging.getLogger(__name__)

DISC_DIAMETER_MM = 90
"""The single physical ground truth; every target derives its units from it."""
MM_PER_IN = 25.4
CSS_DPI = 96

FF = 255
RGB = tuple[int, int, int]
EPS = 1e-9

DEBUG = False


class Color(Enum):
    WHITE, BLACK = (FF, FF, FF), (0, 0, 0)
    INK = (15, 23, 42)  # slate-900
    MUTED = (71, 85, 105)  # slate-600
    ALERT = (153, 27, 27)  # red-800, expiry date
    GUIDE = (203, 213, 225)  # slate-300
    PLACEHOLDER = (148, 163, 184)  # slate-400
    DEBUG_BAND = (FF, 160, 160)

    @staticmethod
    def to_pil(col_spec):
        return col_spec.value if isinstance(col_spec, Color) else col_spec

    @classmethod
    def to_str(cls, col) -> str:
        r, g, b = cls.to_pil(col)[:3]
        return f'#{r:02x}{g:02x}{b:02x}'

    @classmethod
    def parse(cls, col_spec) -> RGB:
        """Accepts a Color, an RGB sequence or any color string Pillow understands."""
        if isinstance(col_spec, Color):
            return col_spec.value
        if isinstance(col_spec, (tuple, list)):
            return tuple(int(c) for c in col_spec[:3])
        return ImageColor.getrgb(col_spec)[:3]


TEXT_COLORS = (Color.INK, Color.MUTED, Color.ALERT, Color.BLACK)
"""Every ink used for text on the disc; background legibility is checked against each."""
MIN_CONTRAST = 4.5


def relative_luminance(col) -> float:
    """WCAG relative luminance of an sRGB color"""
    def linear(c):
        c /= FF
        return c / 12.92 if c <= 0.04045 else ((c + 0.055) / 1.055) ** 2.4
    r, g, b = Color.to_pil(col)[:3]
    return 0.2126 * linear(r) + 0.7152 * linear(g) + 0.0722 * linear(b)


def contrast_ratio(col1, col2) -> float:
    l1, l2 = sorted((relative_luminance(col1), relative_luminance(col2)), reverse=True)
    return (l1 + 0.05) / (l2 + 0.05)


def blend(top, bottom, alpha: float) -> RGB:
    """top painted over bottom at the given opacity"""
    return tuple(round(t * alpha + b * (1 - alpha))
                 for t, b in zip(Color.to_pil(top)[:3], Color.to_pil(bottom)[:3]))


def overlay_alpha(base, text_colors=TEXT_COLORS, overlay=Color.WHITE, min_contrast=MIN_CONTRAST) -> float:
    """Smallest opacity of the overlay over base at which every text color reaches min_contrast."""
    def legible(alpha):
        bg = blend(overlay, base, alpha)
        return all(contrast_ratio(col, bg) >= min_contrast for col in text_colors)
    if legible(0):
        return 0.0
    lo, hi = 0.0, 1.0
    for _ in range(20):
        mid = (lo + hi) / 2
        if legible(mid):
            hi = mid
        else:
            lo = mid
    return math.ceil(hi * 1000) / 1000


class FontClass(Enum):
    SANS, SERIF, MONO, DISPLAY = 'sans', 'serif', 'mono', 'display'


class Font:
    """Fonts are families of (regular, bold) TrueType files, plus a CSS stack for the vector targets."""
    Family = tuple[str, str]
    DejaVuSans: Family = ('DejaVuSans', 'DejaVuSans-Bold')
    DejaVuSerif: Family = ('DejaVuSerif', 'DejaVuSerif-Bold')
    DejaVuSansMono: Family = ('DejaVuSansMono', 'DejaVuSansMono-Bold')
    DejaVuCondensed: Family = ('DejaVuSansCondensed-Bold', 'DejaVuSansCondensed-Bold')

    families: dict[FontClass, Family] = {
        FontClass.SANS: DejaVuSans,
        FontClass.SERIF: DejaVuSerif,
        FontClass.MONO: DejaVuSansMono,
        FontClass.DISPLAY: DejaVuCondensed,
    }

    css_stacks: dict[FontClass, str] = {
        FontClass.SANS: "'DejaVu Sans', Helvetica, Arial, sans-serif",
        FontClass.SERIF: "'DejaVu Serif', Georgia, 'Times New Roman', serif",
        FontClass.MONO: "'DejaVu Sans Mono', Menlo, Consolas, monospace",
        FontClass.DISPLAY: "'DejaVu Sans Condensed', Impact, 'Arial Narrow', sans-serif",
    }

    @classmethod
    def family_for(cls, font_class: FontClass) -> Family:
        return cls.families[font_class]

    @staticmethod
    @cache
    def has_truetype(font_name: str) -> bool:
        try:
            ImageFont.truetype(font_name, 10)
            return True
        except OSError:
            logger.warning('Font %s not found; falling back to the Pillow default font', font_name)
            return False

    @classmethod
    @cache
    def get_truetype_font(cls, font_family: Family, fs: int, bold: bool):
        font_name = font_family[1 if bold else 0]
        if not font_name.endswith('.ttf'): font_name += '.ttf'
        if cls.has_truetype(font_name):
            return ImageFont.truetype(font_name, fs)
        return ImageFont.load_default(size=fs)


MEASURE_PX = 2000
"""Reference pixels per disc diameter for text metrics, so measurements do not depend on a target."""


def text_w(text: str, font_family: Font.Family, size: float, bold: bool = True) -> float:
    """Width of the text in disc diameters, for a font size given in disc diameters."""
    if not text:
        return 0.0
    font = Font.get_truetype_font(font_family, max(1, round(size * MEASURE_PX)), bold)
    return font.getlength(text) / MEASURE_PX


class PermitStatus(Enum):
    ACTIVE, EXPIRED, PENDING = 'Active', 'Expired', 'Pending'


@dataclass(frozen=True)
class PermitRecord:
    """A permit as supplied by the registry; treated as immutable input."""
    registration_number: str
    owner_name: str = ''
    vehicle_make: str = ''
    association_name: str = ''
    issued_date: str = ''
    """pre-formatted display string"""
    expiry_date: str = ''
    """pre-formatted display string"""
    permit_title: str = ''
    authority_name: str = ''
    identifier: str = ''
    """stable unique id; the barcode payload when present"""
    status: PermitStatus = PermitStatus.ACTIVE
    year: int = None

    def __post_init__(self):
        if not (self.registration_number or '').strip():
            raise ValueError('Permit registration number is required')

    @classmethod
    def from_dict(cls, permit_def: dict):
        permit_def = dict(permit_def)
        if 'status' in permit_def:
            permit_def['status'] = PermitStatus(str(permit_def['status']).capitalize())
        return cls(**permit_def)

    @property
    def title(self) -> str:
        if self.permit_title:
            return self.permit_title
        return f'Official Rank Permit {self.year}' if self.year else 'Official Rank Permit'


SCALE_MIN, SCALE_MAX = 0.7, 1.5


@dataclass(frozen=True)
class DiscStyle:
    font_class: FontClass = FontClass.SANS
    global_scale: float = 1.0
    """uniform multiplier on every type size; never changes the disc size"""
    background_color: RGB = Color.WHITE.value
    background_image: str = None
    """URL, data URI or local path of a photographic fill"""
    authority_bold: bool = True
    watermark_image: str = None
    """emblem drawn faint and grey behind the text; same sources as background_image"""

    def __post_init__(self):
        if not SCALE_MIN <= self.global_scale <= SCALE_MAX:
            raise ValueError(f'Global scale {self.global_scale} is outside [{SCALE_MIN}, {SCALE_MAX}]')
        object.__setattr__(self, 'background_color', Color.parse(self.background_color))

    @classmethod
    def from_dict(cls, style_def: dict):
        style_def = dict(style_def)
        if 'font_class' in style_def:
            style_def['font_class'] = FontClass(style_def['font_class'].lower())
        if 'global_scale' in style_def:
            style_def['global_scale'] = float(style_def['global_scale'])
        return cls(**style_def)


@dataclass(frozen=True)
class ExportSettings:
    """Unit and export parameters; dimensions are millimetres unless noted."""
    preview_dpi: float = CSS_DPI
    """CSS pixels per inch assumed by the preview"""
    capture_dpi: int = 600
    """pixel density of the offscreen capture embedded in the PDF"""
    capture_timeout_s: float = 15
    image_fetch_timeout_s: float = 10
    guide_gap_mm: float = 1
    """gap between the disc edge and the calibration guide ring"""
    page_size: str = 'A4'

    page_sizes = {'A4': A4, 'A5': A5, 'LETTER': LETTER}

    def __post_init__(self):
        if self.page_size.upper() not in self.page_sizes:
            raise ValueError(f'Unrecognized page size: {self.page_size}')
        if self.capture_dpi <= 0 or self.preview_dpi <= 0:
            raise ValueError('Pixel densities must be positive')

    @staticmethod
    def dim_to_mm(dim) -> float:
        if not isinstance(dim, str):
            return dim
        if matches := re.match(r'^\s*([\d.]+)\s*(\w*)\s*$', dim):
            result, units = float(matches.group(1)), matches.group(2)
            if units == 'cm':
                result *= 10
            elif units == 'in':
                result *= MM_PER_IN
            elif units == 'pt':
                result *= MM_PER_IN / 72
            elif units not in ('', 'mm'):
                raise ValueError(f'Unrecognized unit in dimension: {dim}')
            return result
        raise ValueError(f'Unrecognized dimension: {dim}')

    @classmethod
    def from_dict(cls, settings_def: dict):
        settings_def = dict(settings_def)
        if 'guide_gap_mm' in settings_def:
            settings_def['guide_gap_mm'] = cls.dim_to_mm(settings_def['guide_gap_mm'])
        return cls(**settings_def)

    @property
    def page_points(self) -> tuple[float, float]:
        return self.page_sizes[self.page_size.upper()]


class DiscError(Exception):
    """Any failure the disc pipeline classifies."""
    user_message = 'The permit disc could not be produced.'


class EncodeError(DiscError):
    """Barcode payload is invalid, or unscannable at the available module width."""
    user_message = 'The barcode could not be encoded; the disc shows a blank barcode slot.'


class ScannabilityError(EncodeError):
    def __init__(self, message, module_width_mm: float, required_width_mm: float):
        super().__init__(message)
        self.module_width_mm = module_width_mm
        self.required_width_mm = required_width_mm


class LayoutOverflowError(DiscError):
    """An element left its reserved band or the disc. This is a defect, never a user condition."""


class ExportError(DiscError):
    user_message = 'Export failed. Please try again.'


class CaptureError(ExportError):
    user_message = ('The disc could not be captured, usually because the background image is unreachable. '
                    'Remove or replace the background image and try again.')


class CaptureTimeoutError(CaptureError):
    user_message = ('Capturing the disc took too long, usually because the background image is slow to load. '
                    'Remove or replace the background image and try again.')


class SerializeError(ExportError):
    user_message = 'The PDF could not be written. Try again, or print the disc instead.'


class PrintError(ExportError):
    user_message = 'The print dialog could not be opened. Export a PDF and print that instead.'


class ExportBusyError(ExportError):
    user_message = 'An export is already in progress.'


# ----------------------2. Barcode Encoding----------------------------

MIN_MODULE_WIDTH_MM = 0.25
"""Narrower modules are unreliable on standard handheld scanners."""
QUIET_ZONE_MODULES = 10
BAR_HEIGHT_MODULES = 30


class PermitCode128(Code128):
    """python-barcode's Code 128, keeping a leading "99" digit pair."""

    def _try_to_optimize(self, encoded: list[int]) -> list[int]:
        # symbols always open in charset C, so a 99 right after the start code is data, not TO_C
        if encoded[1:2] == [99]:
            return encoded
        return super()._try_to_optimize(encoded)


@dataclass(frozen=True)
class BarcodeBitmap:
    """A Code 128 symbol as a module pattern, drawable at any resolution."""
    payload: str
    modules: str
    """bars ('1') and spaces ('0'), without quiet zones"""
    quiet_zone: int = QUIET_ZONE_MODULES
    bar_h: int = BAR_HEIGHT_MODULES
    """intrinsic bar height in modules"""

    @property
    def total_modules(self) -> int:
        return len(self.modules) + 2 * self.quiet_zone

    @property
    def aspect_ratio(self) -> float:
        return self.total_modules / self.bar_h

    def module_width_mm(self, slot_width_mm: float) -> float:
        return slot_width_mm / self.total_modules

    def min_slot_width_mm(self, min_module_mm: float = MIN_MODULE_WIDTH_MM) -> float:
        return self.total_modules * min_module_mm

    def bars(self):
        """Yields (start, width) of each bar in modules, from the outer edge of the left quiet zone."""
        start = None
        for i, module in enumerate(self.modules + '0'):
            if module == '1' and start is None:
                start = i
            elif module == '0' and start is not None:
                yield self.quiet_zone + start, i - start
                start = None

    def to_image(self, width_px: int, height_px: int) -> Image.Image:
        img = Image.new('L', (width_px, height_px), FF)
        draw = ImageDraw.Draw(img)
        module_w = width_px / self.total_modules
        for start, n in self.bars():
            x0, x1 = round(start * module_w), round((start + n) * module_w)
            draw.rectangle((x0, 0, max(x0, x1 - 1), height_px - 1), fill=0)
        return img


class BarcodeEncoder:
    """Code 128 encoding with a physical scannability floor."""
    SEPARATORS = re.compile(r'[\s\-/._]+')
    SUPPORTED = re.compile(r'^[\x20-\x7e]+$')

    def __init__(self, min_module_mm: float = MIN_MODULE_WIDTH_MM, quiet_zone: int = QUIET_ZONE_MODULES):
        self.min_module_mm = min_module_mm
        self.quiet_zone = quiet_zone

    @classmethod
    def normalize_payload(cls, text: str) -> str:
        return cls.SEPARATORS.sub('', text or '')

    @classmethod
    def barcode_payload(cls, record: PermitRecord) -> str:
        source = record.identifier if (record.identifier or '').strip() else record.registration_number
        return cls.normalize_payload(source)

    def encode(self, payload: str, slot_width_mm: float = None) -> BarcodeBitmap:
        """
        :param payload: normalized identifier
        :param slot_width_mm: physical width reserved for the symbol, quiet zones included
        :raises EncodeError: empty payload or characters outside printable ASCII
        :raises ScannabilityError: modules would be narrower than the floor in the given slot
        """
        if not payload:
            raise EncodeError('Barcode payload is empty')
        if not self.SUPPORTED.match(payload):
            unsupported = ''.join(sorted({c for c in payload if not ' ' <= c <= '~'}))
            raise EncodeError(f'Barcode payload has unsupported characters: {unsupported!r}')
        bitmap = BarcodeBitmap(payload, PermitCode128(payload).build()[0], self.quiet_zone)
        if slot_width_mm is not None:
            self.check_scannable(bitmap, slot_width_mm)
        return bitmap

    def check_scannable(self, bitmap: BarcodeBitmap, slot_width_mm: float) -> float:
        module_mm = bitmap.module_width_mm(slot_width_mm)
        if module_mm < self.min_module_mm:
            required = bitmap.min_slot_width_mm(self.min_module_mm)
            raise ScannabilityError(f'{bitmap.payload!r} needs {required:.1f}mm for {self.min_module_mm}mm modules, '
                                    f'slot is {slot_width_mm:.1f}mm', module_mm, required)
        return module_mm


# ----------------------3. Layout Engine----------------------------


class Role(Enum):
    HEADER, ASSOCIATION, REGISTRATION = 'header', 'association', 'registration'
    DETAIL_ROW, BARCODE, GUIDE_RING = 'detailRow', 'barcode', 'guideRing'


@dataclass(frozen=True)
class Band:
    """Vertical extent reserved for a role, in disc diameters from the top."""
    role: Role
    top: float
    bottom: float

    @property
    def h(self) -> float:
        return self.bottom - self.top


BANDS = (
    Band(Role.HEADER, 0.085, 0.215),
    Band(Role.ASSOCIATION, 0.225, 0.345),
    Band(Role.REGISTRATION, 0.355, 0.545),  # holds the registration number at SCALE_MAX unclamped
    Band(Role.DETAIL_ROW, 0.555, 0.715),
    Band(Role.BARCODE, 0.725, 0.865),
)

LINE_H = 1.15
"""line box height per font size"""
LINE_GAP = 0.006
COLUMN_GUTTER = 0.04
WIDTH_FILL = 0.92
"""share of the chord usable by text"""
MIN_SHRINK = 0.75
"""smallest fraction of its resolved size a line may shrink to before it is truncated"""
MAX_FIELD_LENGTH = 120
ELLIPSIS = '…'

BARCODE_PAD = 0.01
BARCODE_FILL = 0.92
PLACEHOLDER_ASPECT = 4.0
BORROW_STEPS = (0, 0.02, 0.04, 0.06)
"""how far the barcode band may move up into the detail row to reach a wider chord"""

GUIDE_RING_INSET = 3 / 420
RIM_W = 2 / 420
GUIDE_W = 0.5 / 420


def chord_w(y: float) -> float:
    """Width of the disc at height y, both in disc diameters."""
    dy = y - 0.5
    return 2 * math.sqrt(max(0.0, 0.25 - dy * dy))


def inner_w(top: float, bottom: float) -> float:
    """Width available across a whole horizontal strip of the disc."""
    return min(chord_w(top), chord_w(bottom))


@dataclass(frozen=True)
class Element:
    """One positioned item on the disc; all lengths in disc diameters."""
    role: Role
    key: str
    cx: float
    cy: float
    w: float
    h: float
    text: str = None
    font_size: float = 0.0
    bold: bool = True
    color: RGB = Color.INK.value
    truncated: bool = False

    @property
    def top(self): return self.cy - self.h / 2

    @property
    def bottom(self): return self.cy + self.h / 2

    @property
    def left(self): return self.cx - self.w / 2

    @property
    def right(self): return self.cx + self.w / 2

    def inside_disc(self) -> bool:
        return all(math.hypot(x - 0.5, y - 0.5) <= 0.5 + EPS
                   for x in (self.left, self.right) for y in (self.top, self.bottom))


@dataclass(frozen=True)
class Background:
    color: RGB = Color.WHITE.value
    image: str = None
    overlay_alpha: float = 0.0
    """opacity of the neutral veil that keeps text legible over any photo or tint"""
    overlay_color: RGB = Color.WHITE.value
    watermark: str = None


WATERMARK_OPACITY = 0.04
WATERMARK_SIZE = 0.62
"""side of the square the emblem is fitted into, in disc diameters"""


@dataclass(frozen=True)
class BarcodeFit:
    """Outcome of encoding the payload and searching for a scannable slot."""
    barcode: BarcodeBitmap = None
    error: EncodeError = field(default=None, compare=False)
    bands: tuple = None

    @property
    def degraded(self) -> bool:
        return self.barcode is None


@dataclass(frozen=True)
class DiscLayout:
    elements: tuple[Element, ...]
    bands: tuple[Band, ...]
    background: Background
    font_family: Font.Family
    font_class: FontClass
    barcode: BarcodeBitmap = None
    barcode_error: EncodeError = field(default=None, compare=False)

    @property
    def degraded(self) -> bool:
        return self.barcode is None

    def element(self, key: str) -> Element:
        return next((e for e in self.elements if e.key == key), None)

    def elements_for(self, role: Role) -> list[Element]:
        return [e for e in self.elements if e.role == role]

    def band(self, role: Role) -> Band:
        return next((b for b in self.bands if b.role == role), None)

    def verify(self):
        """:raises LayoutOverflowError: bands overlap, or an element leaves its band or the disc"""
        for upper, lower in zip(self.bands, self.bands[1:]):
            if upper.bottom > lower.top + EPS:
                raise LayoutOverflowError(f'{upper.role.value} band overlaps {lower.role.value} band')
        for e in self.elements:
            if e.role == Role.GUIDE_RING:
                continue
            band = self.band(e.role)
            if e.top < band.top - EPS or e.bottom > band.bottom + EPS:
                raise LayoutOverflowError(f'{e.key} leaves the {band.role.value} band')
            if not e.inside_disc():
                raise LayoutOverflowError(f'{e.key} leaves the disc')
        return self


def fit_text(text: str, font_family: Font.Family, size: float, bold: bool, max_w: float):
    """
    Shrinks the text to fit (down to MIN_SHRINK of its size), then truncates it with an ellipsis.
    :return: (text, size, width, truncated)
    """
    w = text_w(text, font_family, size, bold)
    floor = size * MIN_SHRINK
    for _ in range(8):
        if w <= max_w or size <= floor:
            break
        size = max(floor, size * max_w / w * 0.99)
        w = text_w(text, font_family, size, bold)
    if w <= max_w:
        return text, size, w, False
    lo, hi = 0, len(text)  # longest prefix that still fits with the ellipsis
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if text_w(text[:mid].rstrip() + ELLIPSIS, font_family, size, bold) <= max_w:
            lo = mid
        else:
            hi = mid - 1
    clipped = text[:lo].rstrip() + ELLIPSIS
    if (w := text_w(clipped, font_family, size, bold)) > max_w:
        return '', size, 0.0, True
    return clipped, size, w, True


@dataclass(frozen=True)
class Cell:
    key: str
    text: str
    size: float
    """base font size in disc diameters, before the global scale"""
    color: Color = Color.INK
    bold: bool = True


def shift_barcode_band(bands: tuple[Band, ...], borrow: float) -> tuple[Band, ...]:
    """Moves the barcode band up by borrow, taking the space from the detail row."""
    if not borrow:
        return bands
    result = []
    for band in bands:
        if band.role == Role.DETAIL_ROW:
            band = replace(band, bottom=band.bottom - borrow)
        elif band.role == Role.BARCODE:
            band = replace(band, top=band.top - borrow, bottom=band.bottom - borrow)
        result.append(band)
    return tuple(result)


class DiscLayoutEngine:
    """Resolves a permit and its style into a DiscLayout. Pure and deterministic."""

    def __init__(self, encoder: BarcodeEncoder = None):
        self.encoder = encoder or BarcodeEncoder()

    def compute(self, record: PermitRecord, style: DiscStyle, fit: BarcodeFit = None) -> DiscLayout:
        """:param fit: result of resolve_barcode for this record, computed here when absent"""
        family = Font.family_for(style.font_class)
        fit = fit or self.resolve_barcode(record)
        elements = []
        for band in fit.bands:
            if band.role == Role.BARCODE:
                elements.append(self.barcode_element(band, fit.barcode))
            else:
                elements.extend(self.layout_lines(band, self.lines_for(band.role, record, style),
                                                  family, style.global_scale))
        ring_d = 1 - 2 * GUIDE_RING_INSET
        elements.append(Element(Role.GUIDE_RING, 'guideRing', 0.5, 0.5, ring_d, ring_d, color=Color.GUIDE.value))
        layout = DiscLayout(tuple(elements), fit.bands, self.background_for(style), family, style.font_class,
                            fit.barcode, fit.error)
        if __debug__:
            layout.verify()
        return layout

    @staticmethod
    def lines_for(role: Role, record: PermitRecord, style: DiscStyle) -> list[tuple[Cell, ...]]:
        def clip(s):
            return (s or '').strip()[:MAX_FIELD_LENGTH]
        if role == Role.HEADER:
            return [(Cell('header.authority', clip(record.authority_name).upper(), 0.024, bold=style.authority_bold),),
                    (Cell('header.title', clip(record.title).upper(), 0.032),)]
        if role == Role.ASSOCIATION:
            return [(Cell('association.name', clip(record.association_name).upper(), 0.043),),
                    (Cell('association.caption', 'ASSOCIATION PERMIT', 0.020, Color.MUTED),)]
        if role == Role.REGISTRATION:
            return [(Cell('registration.caption', 'REG. NO:', 0.019, Color.MUTED),),
                    (Cell('registration.number', clip(record.registration_number), 0.080, Color.BLACK),)]
        if role == Role.DETAIL_ROW:
            make, owner = clip(record.vehicle_make).upper(), clip(record.owner_name).upper()
            return [(Cell('detail.make', f'MAKE: {make}' if make else '', 0.030),),
                    (Cell('detail.owner', f'OWNER: {owner}' if owner else '', 0.022, Color.MUTED),),
                    (Cell('detail.issued.label', 'ISSUED DATE', 0.017, Color.MUTED),
                     Cell('detail.expiry.label', 'EXPIRY DATE', 0.017, Color.MUTED)),
                    (Cell('detail.issued', clip(record.issued_date).upper(), 0.025),
                     Cell('detail.expiry', clip(record.expiry_date).upper(), 0.025, Color.ALERT))]
        return []

    @staticmethod
    def layout_lines(band: Band, lines: list[tuple[Cell, ...]], font_family: Font.Family, scale: float):
        """Stacks the lines centered in the band, clamping type sizes so the stack never leaves it."""
        lines = [line for line in (tuple(c for c in line if c.text) for line in lines) if line]
        if not lines:
            return []
        heights = [max(c.size for c in line) * scale * LINE_H for line in lines]
        gaps = LINE_GAP * (len(lines) - 1)
        clamp = min(1.0, (band.h - gaps) / sum(heights))
        if clamp < 1:
            logger.debug('Clamped %s type by %.3f to fit its band', band.role.value, clamp)
        y = band.top + (band.h - gaps - sum(heights) * clamp) / 2
        band_w = inner_w(band.top, band.bottom) * WIDTH_FILL
        elements = []
        for line, line_h in zip(lines, heights):
            top, bottom = y, y + line_h * clamp
            n = len(line)
            # columns share the band-wide width so that stacked columns line up
            avail = inner_w(top, bottom) * WIDTH_FILL if n == 1 else band_w
            col_w = (avail - COLUMN_GUTTER * (n - 1)) / n
            for i, cell in enumerate(line):
                cx = 0.5 - avail / 2 + col_w / 2 + i * (col_w + COLUMN_GUTTER)
                text, size, w, truncated = fit_text(cell.text, font_family, cell.size * scale * clamp,
                                                    cell.bold, col_w)
                if truncated:
                    logger.debug('Truncated %s to %r', cell.key, text)
                elements.append(Element(band.role, cell.key, cx, (top + bottom) / 2, w, size * LINE_H,
                                        text, size, cell.bold, cell.color.value, truncated))
            y = bottom + LINE_GAP
        return elements

    @staticmethod
    def barcode_slot(band: Band, aspect_ratio: float) -> tuple[float, float, float]:
        """:return: (cy, w, h) of the widest slot of the given proportions inside the band and the disc"""
        top, bottom = band.top + BARCODE_PAD, band.bottom - BARCODE_PAD
        h = min(bottom - top, inner_w(top, bottom) * BARCODE_FILL / aspect_ratio)
        cy = (top + bottom) / 2
        return cy, inner_w(cy - h / 2, cy + h / 2) * BARCODE_FILL, h

    def resolve_barcode(self, record: PermitRecord) -> BarcodeFit:
        """Encodes the payload, then moves the slot up until the symbol is scannable or gives up."""
        try:
            bitmap = self.encoder.encode(self.encoder.barcode_payload(record))
        except EncodeError as exc:
            logger.warning('Barcode left blank: %s', exc)
            return BarcodeFit(None, exc, BANDS)
        error = None
        for borrow in BORROW_STEPS:
            bands = shift_barcode_band(BANDS, borrow)
            _, w, _ = self.barcode_slot(next(b for b in bands if b.role == Role.BARCODE), bitmap.aspect_ratio)
            try:
                self.encoder.check_scannable(bitmap, w * DISC_DIAMETER_MM)
            except ScannabilityError as exc:
                error = exc
                continue
            if borrow:
                logger.info('Barcode slot moved up by %.2f of the diameter to stay scannable', borrow)
            return BarcodeFit(bitmap, None, bands)
        logger.warning('Barcode left blank: %s', error)
        return BarcodeFit(None, error, BANDS)

    def barcode_element(self, band: Band, barcode: BarcodeBitmap) -> Element:
        cy, w, h = self.barcode_slot(band, barcode.aspect_ratio if barcode else PLACEHOLDER_ASPECT)
        return Element(Role.BARCODE, 'barcode', 0.5, cy, w, h,
                       text=barcode.payload if barcode else None, color=Color.BLACK.value)

    @staticmethod
    def background_for(style: DiscStyle) -> Background:
        alpha = overlay_alpha(style.background_color)
        if style.background_image:  # a photo may hold pure black anywhere under the text
            alpha = max(alpha, overlay_alpha(Color.BLACK))
        return Background(style.background_color, style.background_image, alpha, watermark=style.watermark_image)


def compute_layout(record: PermitRecord, style: DiscStyle, encoder: BarcodeEncoder = None) -> DiscLayout:
    return DiscLayoutEngine(encoder).compute(record, style)


# ----------------------4. Drawing Functions----------------------------


class Target(Enum):
    PREVIEW, PRINT, CAPTURE = 'preview', 'print', 'capture'


def units_per_mm(target: Target, settings: 'ExportSettings') -> float:
    if target == Target.PREVIEW:
        return settings.preview_dpi / MM_PER_IN  # CSS px
    if target == Target.PRINT:
        return 1.0  # mm
    return settings.capture_dpi / MM_PER_IN  # device px


def image_href(source: str) -> str:
    if re.match(r'^(https?|file|data):', source):
        return source
    return Path(os.path.abspath(source)).as_uri()


DATA_URI = re.compile(r'^data:(?P<mime>[^;,]*)(?P<params>(;[^;,]*)*?)(?P<b64>;base64)?,(?P<payload>.*)$', re.S)


def read_data_uri(source: str) -> bytes:
    """:raises ValueError: not a well-formed data URI"""
    if not (match := DATA_URI.match(source)):
        raise ValueError('malformed data URI')
    if match.group('b64'):
        return base64.b64decode(match.group('payload'), validate=True)
    return unquote_to_bytes(match.group('payload'))


def load_image(source: str, timeout: float) -> Image.Image:
    """:raises CaptureError: the image is unreachable or undecodable"""
    try:
        if re.match(r'^https?://', source):
            resp = requests.get(source, timeout=timeout)
            resp.raise_for_status()
            img = Image.open(io.BytesIO(resp.content))
        elif source.startswith('data:'):
            img = Image.open(io.BytesIO(read_data_uri(source)))
        else:
            img = Image.open(source[len('file://'):] if source.startswith('file://') else source)
        img.load()
        return img
    except requests.Timeout as exc:
        raise CaptureTimeoutError(f'Image timed out after {timeout}s: {source[:80]}') from exc
    except (requests.RequestException, OSError, ValueError) as exc:
        raise CaptureError(f'Image could not be loaded: {source[:80]} ({exc})') from exc


class Out:
    """Drawing primitives over one target surface; coordinates are in target units."""
    def __init__(self, r):
        self.r = r
        self.placements: dict[str, tuple[float, float]] = {}
    def fill_disc(self, xc, yc, radius, col): pass
    def draw_image_disc(self, xc, yc, radius, source: str, timeout: float): pass
    def veil_disc(self, xc, yc, radius, col, alpha: float): pass
    def draw_watermark(self, xc, yc, side, source: str, timeout: float, opacity: float): pass
    def draw_circle(self, xc, yc, radius, col, width=1, dash=None): pass
    def draw_box(self, x0, y0, dx, dy, col, width=1): pass
    def fill_rect(self, x0, y0, dx, dy, col): pass
    def draw_text(self, xc, yc, text: str, font_size, font_family, font_class, bold, text_w, col): pass
    def draw_barcode(self, x0, y0, dx, dy, bitmap: BarcodeBitmap): pass

    def place(self, key: str, xc, yc):
        self.placements[key] = (xc, yc)


class RasterOut(Out):
    r: ImageDraw.ImageDraw = None

    def __init__(self, image: Image.Image):
        super().__init__(ImageDraw.Draw(image))
        self.image = image

    @classmethod
    def for_image(cls, i: Image.Image):
        return cls(i)

    @staticmethod
    def disc_mask(size: int, fill=FF) -> Image.Image:
        mask = Image.new('L', (size, size), 0)
        ImageDraw.Draw(mask).ellipse((0, 0, size - 1, size - 1), fill=fill)
        return mask

    def fill_disc(self, xc, yc, radius, col):
        self.r.ellipse((xc - radius, yc - radius, xc + radius, yc + radius), fill=Color.to_pil(col))

    def draw_image_disc(self, xc, yc, radius, source, timeout):
        size = round(2 * radius)
        photo = ImageOps.fit(load_image(source, timeout).convert('RGBA'), (size, size))
        mask = ImageChops.multiply(self.disc_mask(size), photo.getchannel('A'))
        self.image.paste(photo.convert('RGB'), (round(xc - radius), round(yc - radius)), mask)

    def veil_disc(self, xc, yc, radius, col, alpha):
        size = round(2 * radius)
        veil = Image.new('RGB', (size, size), Color.to_pil(col))
        self.image.paste(veil, (round(xc - radius), round(yc - radius)), self.disc_mask(size, round(alpha * FF)))

    def draw_watermark(self, xc, yc, side, source, timeout, opacity):
        emblem = ImageOps.contain(load_image(source, timeout).convert('RGBA'), (round(side), round(side)))
        grey = ImageOps.grayscale(emblem).convert('RGB')
        mask = emblem.getchannel('A').point(lambda a: round(a * opacity))
        self.image.paste(grey, (round(xc - emblem.width / 2), round(yc - emblem.height / 2)), mask)

    def draw_circle(self, xc, yc, radius, col, width=1, dash=None):
        bbox = (xc - radius, yc - radius, xc + radius, yc + radius)
        fill, width = Color.to_pil(col), max(1, round(width))
        if not dash:
            self.r.ellipse(bbox, outline=fill, width=width)
            return
        on, off = dash
        step = 360 * (on + off) / (math.tau * radius)
        on_deg = step * on / (on + off)
        a = 0.0
        while a < 360:
            self.r.arc(bbox, a, min(a + on_deg, 360), fill=fill, width=width)
            a += step

    def draw_box(self, x0, y0, dx, dy, col, width=1):
        self.r.rectangle((round(x0), round(y0), round(x0 + dx), round(y0 + dy)),
                         outline=Color.to_pil(col), width=max(1, round(width)))

    def fill_rect(self, x0, y0, dx, dy, col):
        self.r.rectangle((round(x0), round(y0), round(x0 + dx), round(y0 + dy)), fill=Color.to_pil(col))

    def draw_text(self, xc, yc, text, font_size, font_family, font_class, bold, text_w, col):
        font = Font.get_truetype_font(font_family, max(1, round(font_size)), bold)
        self.r.text((xc, yc), text, font=font, fill=Color.to_pil(col), anchor='mm')

    def draw_barcode(self, x0, y0, dx, dy, bitmap):
        bars = bitmap.to_image(max(1, round(dx)), max(1, round(dy)))
        self.image.paste(bars.convert('RGB'), (round(x0), round(y0)))


class SVGOut(Out):
    r: svg.Drawing = None

    @classmethod
    def for_drawing(cls, i: svg.Drawing):
        return cls(i)

    def fill_disc(self, xc, yc, radius, col):
        self.r.append(svg.Circle(xc, yc, radius, fill=Color.to_str(col)))

    def draw_image_disc(self, xc, yc, radius, source, timeout):
        clip = svg.ClipPath()
        clip.append(svg.Circle(xc, yc, radius))
        self.r.append(svg.Image(xc - radius, yc - radius, 2 * radius, 2 * radius, path=image_href(source),
                                embed=False, preserveAspectRatio='xMidYMid slice', clip_path=clip))

    def veil_disc(self, xc, yc, radius, col, alpha):
        self.r.append(svg.Circle(xc, yc, radius, fill=Color.to_str(col), fill_opacity=alpha))

    def draw_watermark(self, xc, yc, side, source, timeout, opacity):
        self.r.append(svg.Image(xc - side / 2, yc - side / 2, side, side, path=image_href(source), embed=False,
                                preserveAspectRatio='xMidYMid meet', opacity=opacity, style='filter: grayscale(1)'))

    def draw_circle(self, xc, yc, radius, col, width=1, dash=None):
        dash_args = {'stroke_dasharray': f'{dash[0]} {dash[1]}'} if dash else {}
        self.r.append(svg.Circle(xc, yc, radius, fill='none', stroke=Color.to_str(col), stroke_width=width,
                                 **dash_args))

    def draw_box(self, x0, y0, dx, dy, col, width=1):
        self.r.append(svg.Rectangle(x0, y0, dx, dy, fill='none', stroke=Color.to_str(col), stroke_width=width))

    def fill_rect(self, x0, y0, dx, dy, col):
        self.r.append(svg.Rectangle(x0, y0, dx, dy, fill=Color.to_str(col)))

    def draw_text(self, xc, yc, text, font_size, font_family, font_class, bold, text_w, col):
        weight = '900' if font_class == FontClass.DISPLAY else 'bold' if bold else 'normal'
        # textLength pins the advance to the measured width, whatever font the viewer substitutes
        self.r.append(svg.Text(text, font_size, xc, yc, font_family=Font.css_stacks[font_class],
                               font_weight=weight, fill=Color.to_str(col), text_anchor='middle',
                               dominant_baseline='central', textLength=text_w, lengthAdjust='spacingAndGlyphs'))

    def draw_barcode(self, x0, y0, dx, dy, bitmap):
        module_w = dx / bitmap.total_modules
        group = svg.Group(shape_rendering='crispEdges')
        group.append(svg.Rectangle(x0, y0, dx, dy, fill='white'))
        for start, n in bitmap.bars():
            group.append(svg.Rectangle(x0 + start * module_w, y0, n * module_w, dy, fill='black'))
        self.r.append(group)


@dataclass(frozen=True)
class RenderedSurface:
    target: Target
    surface: object
    """svg.Drawing for the vector targets, an opaque RGB Image for capture"""
    d: float
    """disc diameter in target units"""
    placements: dict = field(default_factory=dict)
    """center of each drawn element in target units, by element key"""
    settings: ExportSettings = ExportSettings()

    def relative_placements(self) -> dict[str, tuple[float, float]]:
        return {key: (x / self.d, y / self.d) for key, (x, y) in self.placements.items()}

    def as_svg(self) -> str:
        return self.surface.as_svg()


@dataclass(frozen=True)
class DiscRenderer:
    r: Out = None
    target: Target = None
    surface: object = None
    d: float = None
    """disc diameter in target units"""
    settings: ExportSettings = ExportSettings()

    @classmethod
    def for_target(cls, target: Target, settings: ExportSettings = None):
        settings = settings or ExportSettings()
        d = DISC_DIAMETER_MM * units_per_mm(target, settings)
        if target == Target.CAPTURE:
            d = round(d)
            surface = Image.new('RGB', (d, d), Color.WHITE.value)  # opaque, the PDF page is white
            out = RasterOut.for_image(surface)
        else:
            surface = svg.Drawing(d, d, id_prefix='disc_')
            if target == Target.PREVIEW:
                surface.set_render_size('100%', '100%')
            else:
                surface.set_render_size(f'{DISC_DIAMETER_MM}mm', f'{DISC_DIAMETER_MM}mm')
            out = SVGOut.for_drawing(surface)
        return cls(out, target, surface, d, settings)

    def render(self, layout: DiscLayout) -> RenderedSurface:
        d = self.d
        self.draw_background(layout.background)
        if DEBUG:
            for band in layout.bands:
                self.r.draw_box(0, band.top * d, d, band.h * d, Color.DEBUG_BAND)
        for e in layout.elements:
            if e.role == Role.GUIDE_RING:
                self.r.draw_circle(e.cx * d, e.cy * d, e.w * d / 2, e.color, width=GUIDE_W * d,
                                   dash=(d / 140, d / 140))
            elif e.role == Role.BARCODE:
                self.draw_barcode_slot(e, layout.barcode)
            else:
                self.r.draw_text(e.cx * d, e.cy * d, e.text, e.font_size * d, layout.font_family,
                                 layout.font_class, e.bold, e.w * d, e.color)
            self.r.place(e.key, e.cx * d, e.cy * d)
        self.r.draw_circle(d / 2, d / 2, d / 2 - RIM_W * d / 2, Color.BLACK, width=RIM_W * d)
        return RenderedSurface(self.target, self.surface, d, dict(self.r.placements), self.settings)

    def draw_background(self, bg: Background):
        d = self.d
        self.r.fill_disc(d / 2, d / 2, d / 2, bg.color)
        if bg.image:
            self.r.draw_image_disc(d / 2, d / 2, d / 2, bg.image, self.settings.image_fetch_timeout_s)
        if bg.overlay_alpha:
            self.r.veil_disc(d / 2, d / 2, d / 2, bg.overlay_color, bg.overlay_alpha)
        if bg.watermark:
            self.r.draw_watermark(d / 2, d / 2, WATERMARK_SIZE * d, bg.watermark,
                                  self.settings.image_fetch_timeout_s, WATERMARK_OPACITY)

    def draw_barcode_slot(self, e: Element, barcode: BarcodeBitmap):
        d = self.d
        x0, y0, dx, dy = e.left * d, e.top * d, e.w * d, e.h * d
        if barcode:
            self.r.draw_barcode(x0, y0, dx, dy, barcode)
        else:  # keep the slot visible so a reviewer can tell the barcode is missing
            self.r.fill_rect(x0, y0, dx, dy, Color.WHITE)
            self.r.draw_box(x0, y0, dx, dy, Color.PLACEHOLDER, width=max(d / 500, 0.2))


def render(layout: DiscLayout, target: Target, settings: ExportSettings = None) -> RenderedSurface:
    return DiscRenderer.for_target(target, settings).render(layout)


def print_stylesheet(page_size: str = 'A4') -> str:
    return f'''
@page {{ size: {page_size.lower()} portrait; margin: 0; }}
html, body {{ margin: 0; padding: 0; background: #fff; }}
.disc {{ display: flex; align-items: center; justify-content: center; height: 100vh; }}
.disc svg {{ width: {DISC_DIAMETER_MM}mm; height: {DISC_DIAMETER_MM}mm; }}
.hint {{ font: 12px sans-serif; text-align: center; color: #475569; }}
@media print {{ .no-print {{ display: none; }} }}
'''


def print_document(surface: RenderedSurface, auto_print: bool = True) -> str:
    """HTML page holding the print target, sized in physical units for the print dialog."""
    if surface.target != Target.PRINT:
        raise ValueError(f'Only the print target can be printed, not {surface.target.value}')
    script = '<script>window.addEventListener("load", () => window.print());</script>' if auto_print else ''
    return (f'<!DOCTYPE html>\n<html><head><meta charset="utf-8"><title>Permit Disc</title>'
            f'<style>{print_stylesheet(surface.settings.page_size)}</style></head><body>'
            f'<p class="hint no-print">Print at 100% scale. The disc measures {DISC_DIAMETER_MM} mm.</p>'
            f'<div class="disc">{surface.surface.as_svg(header="")}</div>{script}</body></html>\n')


def print_now(surface: RenderedSurface, opener=webbrowser.open) -> str:
    """Hands the print target to the host print facility; returns the path of the print page.

    :raises PrintError: the print page could not be written or no browser accepted it
    """
    try:
        fd, path = tempfile.mkstemp(prefix='permit-disc-', suffix='.html')
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(print_document(surface))
        logger.info('Opening print dialog for %s', path)
        opened = opener(Path(path).as_uri())
    except (OSError, webbrowser.Error) as exc:
        raise PrintError(f'Could not open the print dialog: {exc}') from exc
    if opened is False:
        raise PrintError(f'No browser accepted the print page {path}')
    return path


def save_image(rendered: RenderedSurface, basename: str, output_suffix=None) -> str:
    output_filename = f"{basename}{'.' + output_suffix if output_suffix else ''}"
    output_full_path = os.path.abspath(output_filename)
    if rendered.target == Target.CAPTURE:
        output_full_path += '.png'
        rendered.surface.save(output_full_path, 'PNG')
    elif rendered.target == Target.PRINT:
        output_full_path += '.html'
        with open(output_full_path, 'w', encoding='utf-8') as f:
            f.write(print_document(rendered, auto_print=False))
    else:
        output_full_path += '.svg'
        rendered.surface.save_svg(output_full_path)
    print(f'Result saved to: file://{output_full_path}')
    return output_full_path


# ----------------------5. PDF Export----------------------------


@dataclass(frozen=True)
class PdfFile:
    filename: str
    data: bytes = field(repr=False)
    disc_box_mm: tuple[float, float, float, float] = None
    """(x, y, width, height) of the placed disc image, from the lower left page corner"""
    page_size_mm: tuple[float, float] = None

    @property
    def disc_diameter_mm(self) -> float:
        return self.disc_box_mm[2]

    def save(self, directory: str = '.') -> str:
        path = os.path.abspath(os.path.join(directory, self.filename))
        with open(path, 'wb') as f:
            f.write(self.data)
        return path


class PdfExporter:
    """Places a captured disc at its physical size on a single page, with calibration aids."""
    CAPTION = 'PRINT AT 100% SCALE (ACTUAL SIZE). DO NOT USE "FIT TO PAGE".'
    CAPTION_DETAIL = 'The disc measures {disc:g} mm and the dashed guide ring {ring:g} mm. Check the ruler, then cut.'
    RULER_MM = 50

    def __init__(self, settings: ExportSettings = None):
        self.settings = settings or ExportSettings()

    @staticmethod
    def filename_for(registration_number: str) -> str:
        stem = re.sub(r'\s+', '_', (registration_number or '').strip())
        stem = re.sub(r'[^A-Za-z0-9_.-]', '', stem)
        return f'Taxi_Permit_{stem or "Disc"}.pdf'

    def export_pdf(self, captured: Image.Image, registration_number: str) -> PdfFile:
        """:raises SerializeError: the capture is unusable or the PDF could not be built"""
        if captured.mode not in ('RGB', 'L'):
            raise SerializeError(f'Captured disc must be opaque, got mode {captured.mode}')
        if captured.width != captured.height:
            raise SerializeError(f'Captured disc must be square, got {captured.width}x{captured.height}')
        page_w, page_h = self.settings.page_points
        d = DISC_DIAMETER_MM * mm
        x, y = (page_w - d) / 2, (page_h - d) / 2
        buf = io.BytesIO()
        try:
            c = canvas.Canvas(buf, pagesize=(page_w, page_h))
            c.setTitle(f'Permit disc {registration_number}')
            c.drawImage(ImageReader(captured), x, y, width=d, height=d)
            ring_d = self.draw_guide_ring(c, x + d / 2, y + d / 2, d)
            self.draw_caption(c, page_w / 2, y - 10 * mm, ring_d)
            self.draw_ruler(c, page_w / 2 - self.RULER_MM * mm / 2, y - 30 * mm)
            c.showPage()
            c.save()
        except Exception as exc:
            raise SerializeError(f'PDF construction failed: {exc}') from exc
        logger.info('Serialized %s (%d bytes)', self.filename_for(registration_number), buf.tell())
        return PdfFile(self.filename_for(registration_number), buf.getvalue(),
                       (x / mm, y / mm, d / mm, d / mm), (page_w / mm, page_h / mm))

    def draw_guide_ring(self, c: canvas.Canvas, xc: float, yc: float, d: float) -> float:
        ring_d = d + 2 * self.settings.guide_gap_mm * mm
        c.saveState()
        c.setLineWidth(0.3)
        c.setDash(2, 2)
        c.setStrokeColorRGB(0.4, 0.4, 0.4)
        c.circle(xc, yc, ring_d / 2, stroke=1, fill=0)
        c.restoreState()
        return ring_d

    def draw_caption(self, c: canvas.Canvas, xc: float, y_top: float, ring_d: float):
        c.setFont('Helvetica-Bold', 10)
        c.drawCentredString(xc, y_top, self.CAPTION)
        c.setFont('Helvetica', 8)
        c.drawCentredString(xc, y_top - 5 * mm,
                            self.CAPTION_DETAIL.format(disc=DISC_DIAMETER_MM, ring=round(ring_d / mm, 2)))

    def draw_ruler(self, c: canvas.Canvas, x0: float, y0: float):
        """A millimetre ruler: a tall tick every 10mm, medium every 5mm."""
        c.saveState()
        c.setLineWidth(0.25)
        c.line(x0, y0, x0 + self.RULER_MM * mm, y0)
        c.setFont('Helvetica', 6)
        for i in range(self.RULER_MM + 1):
            x = x0 + i * mm
            if i % 10 == 0:
                c.line(x, y0, x, y0 + 4 * mm)
                c.drawCentredString(x, y0 + 5 * mm, str(i))
            elif i % 5 == 0:
                c.line(x, y0, x, y0 + 2.5 * mm)
            else:
                c.line(x, y0, x, y0 + 1.5 * mm)
        c.drawString(x0 + (self.RULER_MM + 2) * mm, y0, 'mm')
        c.restoreState()


def export_pdf(captured: Image.Image, registration_number: str, settings: ExportSettings = None) -> PdfFile:
    return PdfExporter(settings).export_pdf(captured, registration_number)


# ----------------------6. Export Coordination----------------------------


class ExportTarget(Enum):
    PRINT, PDF = 'print', 'pdf'


class Stage(Enum):
    IDLE, ENCODING, LAYING_OUT, RENDERING = 'idle', 'encoding', 'laying out', 'rendering'
    CAPTURING, EXPORTING, DONE, FAILED = 'capturing', 'exporting', 'done', 'failed'


@dataclass(frozen=True)
class Outcome:
    ok: bool
    target: ExportTarget
    file: PdfFile = None
    reason: DiscError = None
    stage: Stage = Stage.DONE
    """the final stage, or the stage that failed"""
    degraded: bool = False
    """the barcode slot was left blank"""

    @property
    def message(self) -> str:
        if not self.ok:
            return self.reason.user_message
        done = 'Sent to the print dialog.' if self.target == ExportTarget.PRINT else f'Saved {self.file.filename}.'
        return f'{done} {EncodeError.user_message}' if self.degraded else done


class ExportCoordinator:
    """
    Runs one print or PDF export at a time:
    IDLE -> ENCODING -> LAYING_OUT -> RENDERING -> (print: DONE) | (pdf: CAPTURING -> EXPORTING -> DONE)
    Any failing stage ends in FAILED; nothing is retried and the held preview is never touched.
    """

    def __init__(self, settings: ExportSettings = None, encoder: BarcodeEncoder = None,
                 exporter: PdfExporter = None, opener=webbrowser.open):
        self.settings = settings or ExportSettings()
        self.engine = DiscLayoutEngine(encoder)
        self.exporter = exporter or PdfExporter(self.settings)
        self.opener = opener
        self.state = Stage.IDLE
        self.history: list[Stage] = [Stage.IDLE]
        self.preview: RenderedSurface = None
        self._in_flight = False

    @property
    def can_export(self) -> bool:
        return not self._in_flight

    def refresh_preview(self, record: PermitRecord, style: DiscStyle) -> RenderedSurface:
        self.preview = render(self.engine.compute(record, style), Target.PREVIEW, self.settings)
        return self.preview

    def enter(self, stage: Stage):
        logger.debug('Export stage %s -> %s', self.state.value, stage.value)
        self.state = stage
        self.history.append(stage)

    async def run(self, record: PermitRecord, style: DiscStyle, target: ExportTarget) -> Outcome:
        if self._in_flight:
            logger.warning('Export requested while another is in flight; ignored')
            return Outcome(False, target, reason=ExportBusyError('An export is already in progress'),
                           stage=self.state)
        self._in_flight = True
        self.state, self.history = Stage.IDLE, [Stage.IDLE]
        try:
            return await self._run(record, style, target)
        finally:
            self._in_flight = False

    async def _run(self, record, style, target) -> Outcome:
        try:
            self.enter(Stage.ENCODING)
            fit = self.engine.resolve_barcode(record)
            if fit.degraded:
                logger.warning('Continuing with a blank barcode slot: %s', fit.error)
            self.enter(Stage.LAYING_OUT)
            layout = self.engine.compute(record, style, fit)
            self.enter(Stage.RENDERING)
            if target == ExportTarget.PRINT:
                print_now(render(layout, Target.PRINT, self.settings), self.opener)
                self.enter(Stage.DONE)
                return Outcome(True, target, stage=Stage.DONE, degraded=layout.degraded)
            renderer = DiscRenderer.for_target(Target.CAPTURE, self.settings)
            self.enter(Stage.CAPTURING)
            captured = await self.capture(renderer, layout)
            self.enter(Stage.EXPORTING)
            pdf = await asyncio.to_thread(self.exporter.export_pdf, captured.surface, record.registration_number)
            self.enter(Stage.DONE)
            logger.info('Exported %s', pdf.filename)
            return Outcome(True, target, file=pdf, stage=Stage.DONE, degraded=layout.degraded)
        except ExportError as exc:
            failed = self.state
            logger.error('Export failed while %s: %s', failed.value, exc)
            self.enter(Stage.FAILED)
            return Outcome(False, target, reason=exc, stage=failed)

    async def capture(self, renderer: DiscRenderer, layout: DiscLayout) -> RenderedSurface:
        timeout = self.settings.capture_timeout_s
        try:
            return await asyncio.wait_for(asyncio.to_thread(renderer.render, layout), timeout)
        except asyncio.TimeoutError as exc:
            raise CaptureTimeoutError(f'Capture did not finish within {timeout}s') from exc
        except DiscError:
            raise
        except Exception as exc:
            raise CaptureError(f'Capture failed: {exc}') from exc


# ----------------------7. Commands------------------------------------------


@dataclass(frozen=True)
class PermitJob:
    """A permit with its disc style and export settings, as stored in a TOML file."""
    record: PermitRecord
    style: DiscStyle = DiscStyle()
    settings: ExportSettings = ExportSettings()

    @classmethod
    def from_dict(cls, job_def: dict):
        return cls(record=PermitRecord.from_dict(job_def['permit']),
                   style=DiscStyle.from_dict(job_def.get('style', {})),
                   settings=ExportSettings.from_dict(job_def.get('export', {})))

    @classmethod
    def from_toml_file(cls, toml_filename: str):
        return cls.from_dict(toml.load(toml_filename))

    example_dir_path = os.path.join(os.path.dirname(os.path.realpath(__file__)), 'examples')

    @classmethod
    def from_example(cls, example_name: str):
        return cls.from_toml_file(os.path.join(cls.example_dir_path, f'Permit-{example_name}.toml'))

    @classmethod
    def load(cls, job_name: str):
        return cls.from_toml_file(job_name) if os.path.exists(job_name) else cls.from_example(job_name)

    @classmethod
    def example_names(cls):
        for fn in sorted(os.listdir(cls.example_dir_path)):
            if match := re.match(r'Permit-(.*)\.toml$', fn):
                yield match.group(1)


class Mode(Enum):
    PREVIEW, PRINT, CAPTURE, PDF = 'preview', 'print', 'capture', 'pdf'


def main():
    """CLI processor for rendering permit discs to the various targets."""
    import argparse
    args_parser = argparse.ArgumentParser()
    args_parser.add_argument('--permit',
                             default='Demo',
                             help='Example job name (examples/Permit-<name>.toml) or a TOML job file')
    args_parser.add_argument('--target',
                             choices=[m.value for m in Mode],
                             default=Mode.PDF.value,
                             help='What to produce')
    args_parser.add_argument('--scale',
                             type=float,
                             help=f'Global type scale override, {SCALE_MIN} to {SCALE_MAX}')
    args_parser.add_argument('--font',
                             choices=[f.value for f in FontClass],
                             help='Font family override')
    args_parser.add_argument('--suffix',
                             help='Output filename suffix for variations')
    args_parser.add_argument('--no-dialog',
                             action='store_true',
                             help='In print mode, save the print page instead of opening the print dialog')
    args_parser.add_argument('--debug',
                             action='store_true',
                             help='Render band outlines and log every stage')
    cli_args = args_parser.parse_args()
    global DEBUG
    DEBUG = cli_args.debug
    logging.basicConfig(level=logging.DEBUG if DEBUG else logging.INFO,
                        format='%(levelname)s %(name)s: %(message)s')
    mode = Mode(cli_args.target)
    job = PermitJob.load(cli_args.permit)
    style = job.style
    if cli_args.scale is not None:
        style = replace(style, global_scale=cli_args.scale)
    if cli_args.font:
        style = replace(style, font_class=FontClass(cli_args.font))
    basename = f'Permit.{re.sub(r"[^A-Za-z0-9_-]", "", job.record.registration_number)}'

    start_time = time.process_time()
    if mode in (Mode.PREVIEW, Mode.CAPTURE) or mode == Mode.PRINT and cli_args.no_dialog:
        layout = compute_layout(job.record, style)
        rendered = render(layout, Target(mode.value), job.settings)
        print(f'Disc render finished at: {round(time.process_time() - start_time, 3)} seconds')
        save_image(rendered, f'{basename}.{mode.value.capitalize()}', cli_args.suffix)
        return 0
    coordinator = ExportCoordinator(job.settings)
    outcome = asyncio.run(coordinator.run(job.record, style, ExportTarget(mode.value)))
    print(f'Export finished at: {round(time.process_time() - start_time, 3)} seconds')
    if not outcome.ok:
        print(f'Export failed: {outcome.message}')
        return 1
    if outcome.file:
        print(f'Result saved to: file://{outcome.file.save()}')
    else:
        print(outcome.message)
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
