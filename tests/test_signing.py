import pytest

from canvass_auth.signing import canonical_otp_message, sign_otp, signatures_match

KEY = b"k-test"
EMAIL = "voter@example.com"
CODE = "123456"
EXP = 1_700_000_300_000


def test_canonical_message_layout():
    assert canonical_otp_message(EMAIL, CODE, EXP) == b"voter@example.com.123456.1700000300000"


def test_sign_is_deterministic():
    assert sign_otp(KEY, EMAIL, CODE, EXP) == sign_otp(KEY, EMAIL, CODE, EXP)


def test_sign_known_vector_shape():
    sig = sign_otp(KEY, EMAIL, CODE, EXP)
    assert len(sig) == 64
    assert sig == sig.lower()
    int(sig, 16)


@pytest.mark.parametrize(
    "identity,code,exp",
    [
        ("voter@example.con", CODE, EXP),
        ("Voter@example.com", CODE, EXP),
        (EMAIL, "123457", EXP),
        (EMAIL, "023456", EXP),
        (EMAIL, CODE, EXP + 1),
        (EMAIL, CODE, EXP - 1000),
    ],
)
def test_single_change_changes_signature(identity, code, exp):
    assert sign_otp(KEY, identity, code, exp) != sign_otp(KEY, EMAIL, CODE, EXP)


def test_signature_depends_on_key():
    assert sign_otp(b"other", EMAIL, CODE, EXP) != sign_otp(KEY, EMAIL, CODE, EXP)


class TestSignaturesMatch:
    def test_equal(self):
        sig = sign_otp(KEY, EMAIL, CODE, EXP)
        assert signatures_match(sig, sig) is True

    def test_uppercase_hex_is_same_value(self):
        sig = sign_otp(KEY, EMAIL, CODE, EXP)
        assert signatures_match(sig.upper(), sig) is True

    def test_different(self):
        sig = sign_otp(KEY, EMAIL, CODE, EXP)
        assert signatures_match("0" * 64, sig) is False

    @pytest.mark.parametrize("presented", [None, 123, ["a"], {"x": 1}])
    def test_non_string_never_matches(self, presented):
        assert signatures_match(presented, sign_otp(KEY, EMAIL, CODE, EXP)) is False
