"""
SOP Engine — Evidence Validator Tests

Each evidence type accepts well-formed input and rejects the rest with
a specific, user-facing reason code.
"""

import base64
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from sop_engine.errors import EvidenceRejected
from sop_engine.types import DualSignatureConfig, EvidenceConfig, EvidenceType, GeoLocation, SOPStep
from sop_engine.validators import (
    decode_payload,
    format_bytes,
    photo_location,
    sniff_mime,
    to_data_url,
    validate_checkbox,
    validate_evidence,
    validate_numeric,
    validate_photo,
    validate_qr_scan,
    validate_signature,
    validate_text,
)

PNG_HEADER = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
JPEG_HEADER = b"\xff\xd8\xff\xe0" + b"\x00" * 32


def _step(evidence_type, **config):
    return SOPStep(
        id="s1", order=1, title="Step",
        evidence_required=True,
        evidence_type=evidence_type,
        evidence_config=EvidenceConfig(**config),
    )


class TestNumeric(unittest.TestCase):

    def setUp(self):
        self.config = EvidenceConfig(min_value=0, max_value=100, unit="°C")

    def test_in_range_string_accepted(self):
        self.assertEqual(validate_numeric("42", self.config), 42.0)

    def test_whitespace_trimmed(self):
        self.assertEqual(validate_numeric("  7.5 ", self.config), 7.5)

    def test_above_max_rejected_with_range(self):
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_numeric("150", self.config)
        self.assertEqual(ctx.exception.code, "ABOVE_MAX")
        self.assertEqual(ctx.exception.message, "Value must be at most 100 °C")

    def test_below_min_rejected(self):
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_numeric(-1, self.config)
        self.assertEqual(ctx.exception.code, "BELOW_MIN")
        self.assertIn("at least 0", ctx.exception.message)

    def test_bounds_inclusive(self):
        self.assertEqual(validate_numeric(0, self.config), 0.0)
        self.assertEqual(validate_numeric(100, self.config), 100.0)

    def test_garbage_rejected(self):
        for raw in ("abc", "", None, True, float("nan"), float("inf"), [1]):
            with self.subTest(raw=raw):
                with self.assertRaises(EvidenceRejected) as ctx:
                    validate_numeric(raw, self.config)
                self.assertEqual(ctx.exception.code, "INVALID_NUMBER")

    def test_unbounded(self):
        self.assertEqual(validate_numeric(-5000, EvidenceConfig()), -5000.0)


class TestCheckbox(unittest.TestCase):

    def setUp(self):
        self.config = EvidenceConfig(options=["labels", "cartons", "product"])

    def test_selection_kept_in_order_without_duplicates(self):
        result = validate_checkbox(["cartons", "labels", "cartons"], self.config)
        self.assertEqual(result, ["cartons", "labels"])

    def test_single_string_wrapped(self):
        self.assertEqual(validate_checkbox("labels", self.config), ["labels"])

    def test_empty_rejected(self):
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_checkbox([], self.config)
        self.assertEqual(ctx.exception.code, "SELECTION_REQUIRED")

    def test_unknown_option_rejected(self):
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_checkbox(["labels", "pallets"], self.config)
        self.assertEqual(ctx.exception.code, "UNKNOWN_OPTION")
        self.assertIn("pallets", ctx.exception.message)

    def test_free_options_when_unconfigured(self):
        self.assertEqual(validate_checkbox(["anything"], EvidenceConfig()), ["anything"])


class TestText(unittest.TestCase):

    def test_blank_rejected(self):
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_text("   ", EvidenceConfig())
        self.assertEqual(ctx.exception.code, "TEXT_REQUIRED")

    def test_length_limits(self):
        config = EvidenceConfig(min_length=5, max_length=10)
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_text("abc", config)
        self.assertEqual(ctx.exception.code, "TEXT_TOO_SHORT")
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_text("x" * 11, config)
        self.assertEqual(ctx.exception.code, "TEXT_TOO_LONG")
        self.assertEqual(validate_text("cooled", config), "cooled")

    def test_required_text(self):
        config = EvidenceConfig(required_text="OK")
        self.assertEqual(validate_text("Line OK", config), "Line OK")
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_text("Line fine", config)
        self.assertEqual(ctx.exception.code, "REQUIRED_TEXT_MISSING")


class TestBinary(unittest.TestCase):

    def test_bytes_become_data_url(self):
        url = validate_photo(JPEG_HEADER, EvidenceConfig())
        self.assertTrue(url.startswith("data:image/jpeg;base64,"))

    def test_data_url_mime_kept(self):
        url = to_data_url(PNG_HEADER, "image/png")
        data, mime = decode_payload(url)
        self.assertEqual(data, PNG_HEADER)
        self.assertEqual(mime, "image/png")

    def test_bare_base64_sniffed(self):
        data, mime = decode_payload(base64.b64encode(PNG_HEADER).decode())
        self.assertEqual(mime, "image/png")
        self.assertEqual(data, PNG_HEADER)

    def test_empty_photo_rejected(self):
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_photo(b"", EvidenceConfig())
        self.assertEqual(ctx.exception.code, "PHOTO_REQUIRED")

    def test_missing_signature_rejected(self):
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_signature(None, EvidenceConfig())
        self.assertEqual(ctx.exception.code, "SIGNATURE_REQUIRED")

    def test_bad_base64_rejected(self):
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_photo("data:image/png;base64,@@@not-base64@@@", EvidenceConfig())
        self.assertEqual(ctx.exception.code, "INVALID_PAYLOAD")

    def test_oversized_rejected(self):
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_photo(JPEG_HEADER + b"\x00" * 2048, EvidenceConfig(), max_bytes=1024)
        self.assertEqual(ctx.exception.code, "FILE_TOO_LARGE")
        self.assertIn("1.0 KB", ctx.exception.message)

    def test_sniff_unknown(self):
        self.assertEqual(sniff_mime(b"hello"), "application/octet-stream")

    def test_format_bytes(self):
        self.assertEqual(format_bytes(0), "0 B")
        self.assertEqual(format_bytes(512), "512 B")
        self.assertEqual(format_bytes(1536), "1.5 KB")
        self.assertEqual(format_bytes(10 * 1024 * 1024), "10.0 MB")


class TestPhotoBatch(unittest.TestCase):

    def test_several_photos_return_list(self):
        urls = validate_photo([JPEG_HEADER, PNG_HEADER], EvidenceConfig())
        self.assertEqual(len(urls), 2)
        self.assertTrue(urls[1].startswith("data:image/png;base64,"))

    def test_single_photo_in_list_returns_str(self):
        self.assertIsInstance(validate_photo([JPEG_HEADER], EvidenceConfig()), str)

    def test_empty_list_rejected(self):
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_photo([], EvidenceConfig())
        self.assertEqual(ctx.exception.code, "PHOTO_REQUIRED")

    def test_too_many_photos(self):
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_photo([JPEG_HEADER] * 4, EvidenceConfig(max_photos=3))
        self.assertEqual(ctx.exception.code, "TOO_MANY_PHOTOS")
        self.assertEqual(ctx.exception.message, "Maximum 3 photos allowed")
        self.assertEqual(len(validate_photo([JPEG_HEADER] * 3, EvidenceConfig(max_photos=3))), 3)

    def test_location_required(self):
        config = EvidenceConfig(require_location=True)
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_photo(JPEG_HEADER, config)
        self.assertEqual(ctx.exception.code, "LOCATION_REQUIRED")
        self.assertEqual(ctx.exception.message, "Location data is required for this photo")

        url = validate_photo({"photo": JPEG_HEADER, "location": {"lat": 1.5, "lng": 2}}, config)
        self.assertTrue(url.startswith("data:image/jpeg"))

    def test_bad_location_rejected(self):
        for location in ({"lat": 91, "lng": 0}, {"lat": "north"}, "here"):
            with self.subTest(location=location):
                with self.assertRaises(EvidenceRejected) as ctx:
                    validate_photo({"photos": [JPEG_HEADER], "location": location}, EvidenceConfig())
                self.assertEqual(ctx.exception.code, "INVALID_LOCATION")

    def test_photo_location(self):
        self.assertEqual(photo_location({"photos": [], "location": {"lat": 3, "lng": 4}}),
                         GeoLocation(3.0, 4.0))
        self.assertIsNone(photo_location(JPEG_HEADER))
        self.assertIsNone(photo_location({"photos": [JPEG_HEADER]}))

    def test_step_id_filled_through_validate_evidence(self):
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_evidence(_step(EvidenceType.PHOTO, max_photos=1), [JPEG_HEADER, JPEG_HEADER])
        self.assertEqual(ctx.exception.code, "TOO_MANY_PHOTOS")
        self.assertEqual(ctx.exception.step_id, "s1")


class TestQrScan(unittest.TestCase):

    def test_format_must_match_whole_token(self):
        config = EvidenceConfig(expected_format="LINE-[0-9]{3}")
        self.assertEqual(validate_qr_scan(" LINE-042 ", config), "LINE-042")
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_qr_scan("LINE-0421", config)
        self.assertEqual(ctx.exception.code, "FORMAT_MISMATCH")

    def test_empty_scan_rejected(self):
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_qr_scan("", EvidenceConfig())
        self.assertEqual(ctx.exception.code, "SCAN_REQUIRED")


class TestValidateEvidence(unittest.TestCase):

    def test_dispatch_by_type(self):
        self.assertEqual(validate_evidence(_step(EvidenceType.NUMERIC), "3"), 3.0)
        self.assertEqual(validate_evidence(_step(EvidenceType.QR_SCAN), "abc"), "abc")

    def test_rejection_carries_step_id(self):
        step = _step(EvidenceType.NUMERIC, max_value=10)
        with self.assertRaises(EvidenceRejected) as ctx:
            validate_evidence(step, "11")
        self.assertEqual(ctx.exception.step_id, "s1")

    def test_untyped_step_is_an_error(self):
        with self.assertRaises(ValueError):
            validate_evidence(_step(None), "x")

    def test_dual_signature_not_handled_here(self):
        step = _step(EvidenceType.DUAL_SIGNATURE,
                     dual_signature=DualSignatureConfig("site_manager", "compliance_qa"))
        with self.assertRaises(ValueError):
            validate_evidence(step, {})


if __name__ == "__main__":
    unittest.main()
