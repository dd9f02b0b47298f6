import secrets

# No 0/O, 1/I/L: codes are read out loud to support staff
UNAMBIGUOUS_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_code(prefix="", length=12, alphabet=UNAMBIGUOUS_ALPHABET):
    """
    Unpredictable human-readable code, e.g. ORD7KQ2M9XH4TPW.
    """
    return prefix + "".join(secrets.choice(alphabet) for _ in range(length))
