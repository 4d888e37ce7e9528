"""
Unit tests for the decode pipeline
"""

import os
import sys

import cv2
import numpy as np
import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import qr_page_tagger as qpt
from tests.pdf_helpers import qr_region


class TestImageTransforms:
    """Test the pure image transforms"""

    def test_contrast_stretch_values(self):
        """Test (v - 128) * 2 + 128 clamped to [0, 255]"""
        image = np.array([[0, 100, 128, 150, 255]], dtype=np.uint8)
        stretched = qpt.stretch_contrast(image)

        assert stretched.tolist() == [[0, 72, 128, 172, 255]]
        assert stretched.dtype == np.uint8

    def test_contrast_stretch_per_channel(self):
        image = np.array([[[100, 128, 200]]], dtype=np.uint8)
        assert qpt.stretch_contrast(image).tolist() == [[[72, 128, 255]]]

    def test_transforms_do_not_modify_input(self):
        image = np.array([[[10, 100, 200]]], dtype=np.uint8)
        original = image.copy()

        qpt.stretch_contrast(image)
        qpt.to_grayscale(image)
        qpt.invert_colors(image)
        qpt.scale_image(image, 2.0)
        qpt.rotate_image(image, 90)

        assert np.array_equal(image, original)

    def test_grayscale_from_color(self):
        image = np.full((4, 6, 3), 200, dtype=np.uint8)
        gray = qpt.to_grayscale(image)

        assert gray.shape == (4, 6)
        assert (gray == 200).all()

    def test_grayscale_from_gray_is_copy(self):
        image = np.zeros((4, 6), dtype=np.uint8)
        gray = qpt.to_grayscale(image)

        assert gray is not image
        assert np.array_equal(gray, image)

    def test_invert(self):
        image = np.array([[0, 55, 255]], dtype=np.uint8)
        assert qpt.invert_colors(image).tolist() == [[255, 200, 0]]

    def test_scale_truncates(self):
        image = np.zeros((101, 101, 3), dtype=np.uint8)

        assert qpt.scale_image(image, 1.5).shape == (151, 151, 3)
        assert qpt.scale_image(image, 0.75).shape == (75, 75, 3)
        assert qpt.scale_image(image, 0.5).shape == (50, 50, 3)

    def test_scale_to_nothing(self):
        with pytest.raises(ValueError):
            qpt.scale_image(np.zeros((3, 3), dtype=np.uint8), 0.1)

    def test_rotate_quarter_turn_swaps_dimensions(self):
        image = np.zeros((10, 20, 3), dtype=np.uint8)

        assert qpt.rotate_image(image, 90).shape == (20, 10, 3)
        assert qpt.rotate_image(image, 180).shape == (10, 20, 3)
        assert qpt.rotate_image(image, 270).shape == (20, 10, 3)

    def test_rotate_is_clockwise(self):
        image = np.zeros((2, 3), dtype=np.uint8)
        image[0, 0] = 255

        assert qpt.rotate_image(image, 90)[0, 1] == 255
        assert qpt.rotate_image(image, 270)[2, 0] == 255
        assert qpt.rotate_image(image, 180)[1, 2] == 255

    def test_rotate_arbitrary_angle_expands_canvas(self):
        image = np.full((100, 100, 3), 255, dtype=np.uint8)
        rotated = qpt.rotate_image(image, 45)

        assert rotated.shape == (141, 141, 3)
        assert rotated.dtype == np.uint8
        # Uncovered corners keep the zero background
        assert (rotated[0, 0] == 0).all()


class TestBinarizers:
    """Test binarization strategies"""

    def test_outputs_are_binary(self):
        region = qr_region(3, upscale=2)
        for binarize in (qpt.adaptive_binarize, qpt.histogram_binarize):
            binary = binarize(region)

            assert binary.ndim == 2
            assert set(np.unique(binary)) <= {0, 255}

    def test_blank_stays_white(self):
        blank = np.full((200, 200, 3), 255, dtype=np.uint8)
        assert (qpt.adaptive_binarize(blank) == 255).all()

    def test_washed_out_region(self):
        """Test a [100, 155] region is flat for the adaptive binarizer but not for Otsu"""
        low_contrast = (100 + qr_region(42).astype(np.float32) / 255 * 55).astype(np.uint8)

        assert (qpt.adaptive_binarize(low_contrast) == 255).all()
        assert (qpt.histogram_binarize(low_contrast) == 0).any()

    def test_local_range_threshold(self):
        """Test a step just under MIN_LOCAL_RANGE is dropped and one at it is kept"""
        image = np.full((200, 200), 150, dtype=np.uint8)
        image[:, 100:] = 150 - qpt.MIN_LOCAL_RANGE + 1
        assert (qpt.adaptive_binarize(image) == 255).all()

        image[:, 100:] = 150 - qpt.MIN_LOCAL_RANGE
        assert (qpt.adaptive_binarize(image) == 0).any()


class TestDecodePlan:
    """Test the ordered strategy list"""

    def test_plan_order(self):
        """Test transforms, binarizers and rotations are tried in fixed order"""
        expected = []
        for transform in ['identity', 'contrast', 'grayscale', 'invert',
                          'scale-1.5', 'scale-2.0', 'scale-0.75', 'scale-0.5',
                          'rotate-90', 'rotate-180', 'rotate-270']:
            expected.append(f'{transform}/adaptive')
            expected.append(f'{transform}/histogram')

        assert [s.name for s in qpt.DECODE_PLAN] == expected

    def test_plan_is_rebuilt_identically(self):
        rebuilt = qpt.build_decode_plan()
        assert [s.name for s in rebuilt] == [s.name for s in qpt.DECODE_PLAN]


class TestReadQRText:
    """Test reading a single binarized image"""

    def test_single_code(self):
        binary = qpt.adaptive_binarize(qr_region(8))
        status, text, error = qpt.read_qr_text(binary)

        assert status is qpt.DecodeStatus.FOUND
        assert text == '{"pageIndex": 8}'
        assert error is None

    def test_no_code(self):
        status, text, error = qpt.read_qr_text(np.full((200, 200), 255, dtype=np.uint8))

        assert status is qpt.DecodeStatus.NOT_FOUND
        assert text is None

    def test_two_different_codes_are_ambiguous(self):
        binary = qpt.adaptive_binarize(np.hstack([qr_region(1), qr_region(2)]))
        status, text, error = qpt.read_qr_text(binary)

        assert status is qpt.DecodeStatus.AMBIGUOUS
        assert text is None

    def test_two_identical_codes_agree(self):
        binary = qpt.adaptive_binarize(np.hstack([qr_region(4), qr_region(4)]))
        status, text, error = qpt.read_qr_text(binary)

        assert status is qpt.DecodeStatus.FOUND
        assert text == '{"pageIndex": 4}'


class TestDecodeRegion:
    """Test the full fallback pipeline"""

    def test_clean_region_uses_first_strategy(self):
        outcome = qpt.decode_region(qr_region(5))

        assert outcome.found
        assert outcome.text == '{"pageIndex": 5}'
        assert outcome.strategy == 'identity/adaptive'
        assert outcome.attempts == 1

    def test_grayscale_input(self):
        gray = cv2.cvtColor(qr_region(6), cv2.COLOR_BGR2GRAY)
        assert qpt.decode_page_index(gray) == 6

    @pytest.mark.parametrize('angle', [90, 180, 270])
    def test_rotation_invariance(self, angle):
        region = qr_region(11)
        rotated = np.ascontiguousarray(np.rot90(region, k=angle // 90))

        assert qpt.decode_page_index(rotated) == qpt.decode_page_index(region) == 11

    @pytest.mark.parametrize('factor', [0.5, 0.75, 1.5, 2.0])
    def test_scale_invariance(self, factor):
        region = cv2.resize(qr_region(23), None, fx=factor, fy=factor,
                            interpolation=cv2.INTER_LINEAR)
        assert qpt.decode_page_index(region) == 23

    def test_inverted_polarity(self):
        """Test light-on-dark symbols are read by the invert transform"""
        inverted = 255 - qr_region(31)
        outcome = qpt.decode_region(inverted)

        assert outcome.text == '{"pageIndex": 31}'
        assert outcome.strategy == 'invert/adaptive'
        assert outcome.attempts == 7

    def test_low_contrast(self):
        """Test channel range compressed to [100, 155] falls through to the global binarizer"""
        region = qr_region(42).astype(np.float32)
        low_contrast = (100 + region / 255 * 55).astype(np.uint8)

        assert low_contrast.min() >= 100
        assert low_contrast.max() <= 155

        outcome = qpt.decode_region(low_contrast)
        assert outcome.text == '{"pageIndex": 42}'
        assert outcome.strategy == 'identity/histogram'
        assert outcome.attempts == 2

    def test_rotation_selected_when_upright_reads_fail(self, monkeypatch):
        """Test only a quarter turn succeeds when upright images never read"""
        real_read = qpt.read_qr_text

        def portrait_only(binary):
            if binary.shape[0] < binary.shape[1]:
                return qpt.DecodeStatus.NOT_FOUND, None, "no QR code found"
            return real_read(binary)

        monkeypatch.setattr(qpt, 'read_qr_text', portrait_only)

        region = qr_region(17)
        landscape = np.hstack([region, np.full((region.shape[0], 200, 3), 255, dtype=np.uint8)])
        outcome = qpt.decode_region(landscape)

        assert outcome.text == '{"pageIndex": 17}'
        assert outcome.strategy == 'rotate-90/adaptive'
        assert outcome.attempts == len(qpt.DECODE_PLAN) - 5

    def test_scale_selected_when_native_size_fails(self, monkeypatch):
        """Test the first enlarging scale wins when the native size never reads"""
        real_read = qpt.read_qr_text
        region = qr_region(19)

        def enlarged_only(binary):
            if binary.shape[1] <= region.shape[1]:
                return qpt.DecodeStatus.NOT_FOUND, None, "no QR code found"
            return real_read(binary)

        monkeypatch.setattr(qpt, 'read_qr_text', enlarged_only)
        outcome = qpt.decode_region(region)

        assert outcome.text == '{"pageIndex": 19}'
        assert outcome.strategy == 'scale-1.5/adaptive'
        assert outcome.attempts == 9

    def test_blank_region_not_found(self):
        """Test an all-white region exhausts every strategy without raising"""
        blank = np.full((400, 400, 3), 255, dtype=np.uint8)
        outcome = qpt.decode_region(blank)

        assert outcome.status is qpt.DecodeStatus.NOT_FOUND
        assert outcome.attempts == len(qpt.DECODE_PLAN)
        assert outcome.last_error is not None
        assert outcome.text is None

    def test_noise_region_not_found(self):
        rng = np.random.default_rng(7)
        noise = rng.integers(0, 256, size=(300, 300, 3), dtype=np.uint8)

        assert not qpt.decode_region(noise).found

    def test_empty_region(self):
        outcome = qpt.decode_region(np.zeros((0, 0, 3), dtype=np.uint8))

        assert outcome.status is qpt.DecodeStatus.NOT_FOUND
        assert outcome.attempts == 0

    def test_none_region(self):
        assert qpt.decode_region(None).status is qpt.DecodeStatus.NOT_FOUND

    def test_failing_attempt_is_captured(self):
        """Test an exception in one strategy moves on to the next"""
        def broken(image):
            raise RuntimeError("transform exploded")

        plan = [
            qpt.DecodeStrategy('broken/adaptive', broken, qpt.adaptive_binarize),
            qpt.DecodeStrategy('identity/adaptive', qpt.identity, qpt.adaptive_binarize),
        ]
        outcome = qpt.decode_region(qr_region(2), plan=plan)

        assert outcome.found
        assert outcome.strategy == 'identity/adaptive'
        assert outcome.attempts == 2

    def test_all_attempts_failing_keeps_last_error(self):
        def broken(image):
            raise RuntimeError("transform exploded")

        plan = [qpt.DecodeStrategy('broken/adaptive', broken, qpt.adaptive_binarize)]
        outcome = qpt.decode_region(qr_region(2), plan=plan)

        assert outcome.status is qpt.DecodeStatus.NOT_FOUND
        assert 'transform exploded' in outcome.last_error

    def test_first_success_wins(self):
        """Test strategies after the first success are never run"""
        calls = []

        def tracking(name):
            def transform(image):
                calls.append(name)
                return image
            return transform

        plan = [
            qpt.DecodeStrategy('first', tracking('first'), qpt.adaptive_binarize),
            qpt.DecodeStrategy('second', tracking('second'), qpt.adaptive_binarize),
        ]
        outcome = qpt.decode_region(qr_region(9), plan=plan)

        assert outcome.strategy == 'first'
        assert calls == ['first']

    def test_corrupt_symbols_reported(self, monkeypatch):
        """Test exhaustion reports CORRUPT when a symbol was seen but unreadable"""
        responses = iter([
            (qpt.DecodeStatus.CORRUPT, None, "QR data is not UTF-8"),
            (qpt.DecodeStatus.NOT_FOUND, None, "no QR code found"),
        ])
        monkeypatch.setattr(qpt, 'read_qr_text', lambda binary: next(responses))

        plan = qpt.DECODE_PLAN[:2]
        outcome = qpt.decode_region(qr_region(1), plan=plan)

        assert outcome.status is qpt.DecodeStatus.CORRUPT
        assert 'no QR code found' in outcome.last_error

    def test_outcome_is_frozen(self):
        outcome = qpt.decode_region(qr_region(1))
        with pytest.raises(Exception):
            outcome.text = 'changed'


class TestDecodePageIndex:
    """Test decoding straight to a page index"""

    def test_unreadable_region_raises_decode_error(self):
        blank = np.full((200, 200, 3), 255, dtype=np.uint8)

        with pytest.raises(qpt.DecodeError) as exc_info:
            qpt.decode_page_index(blank)

        assert exc_info.value.outcome.status is qpt.DecodeStatus.NOT_FOUND

    def test_foreign_payload_raises_codec_error(self):
        """Test a readable QR code with other content is a codec failure"""
        image = qpt.encode_qr('hello world')
        region = cv2.cvtColor(np.array(image), cv2.COLOR_RGB2BGR)

        with pytest.raises(qpt.MalformedPayloadError):
            qpt.decode_page_index(region)

    def test_missing_field_payload(self):
        image = qpt.encode_qr('{"page": 1}')
        region = cv2.cvtColor(np.array(image), cv2.COLOR_RGB2BGR)

        with pytest.raises(qpt.MissingFieldError):
            qpt.decode_page_index(region)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
