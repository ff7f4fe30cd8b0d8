import re

import pytest

from errors import UploadValidationError
from naming import (
    MAX_NAME_LENGTH,
    generate_merge_id,
    generate_stream_id,
    sanitize_name,
    staged_upload_name,
)


class TestSanitize:
    """Test filesystem-safe names"""

    def test_plain_name_unchanged(self):
        assert sanitize_name("demo") == "demo"

    def test_unsafe_characters_replaced(self):
        assert sanitize_name('a<b>c:d"e/f\\g|h?i*j') == "a_b_c_d_e_f_g_h_i_j"
        assert sanitize_name("tab\there") == "tab_here"

    def test_path_traversal_neutralised(self):
        assert "/" not in sanitize_name("../../etc/passwd")

    def test_length_capped(self):
        assert len(sanitize_name("x" * 500)) == MAX_NAME_LENGTH

    def test_whitespace_stripped(self):
        assert sanitize_name("  demo  ") == "demo"
        assert sanitize_name("   ") == ""


class TestIdentifiers:
    """Test stream and merge id allocation"""

    def test_stream_id_format(self):
        stream_id = generate_stream_id("demo")
        assert re.fullmatch(r"demo_[0-9a-f]{8}", stream_id)

    def test_stream_id_sanitized(self):
        assert generate_stream_id("my/show").startswith("my_show_")

    def test_stream_ids_unique(self):
        assert len({generate_stream_id("demo") for _ in range(100)}) == 100

    def test_empty_name_rejected(self):
        with pytest.raises(UploadValidationError):
            generate_stream_id("")
        with pytest.raises(UploadValidationError):
            generate_stream_id("   ")

    def test_merge_id(self):
        assert re.fullmatch(r"[0-9a-f]{8}", generate_merge_id())

    def test_staged_upload_name(self):
        name = staged_upload_name("../videos/My Clip?.mp4")
        assert re.fullmatch(r"\d+_[0-9a-f]{8}_My Clip_\.mp4", name)

    def test_staged_upload_name_without_filename(self):
        assert staged_upload_name("").endswith("_upload")
