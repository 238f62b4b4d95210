import os
import argparse
import datetime

from jose import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from facility_monitor.permissions import ROLE_ALIASES, ROLE_TABLE_PERMISSIONS

PRIVATE_KEY_FILE = "private.pem"
PUBLIC_KEY_FILE = "public.pem"
ENV_FILE = ".env"


def parse_args():
    parser = argparse.ArgumentParser(description="Generate an RSA key pair and a JWT for a dashboard user")
    parser.add_argument("user_id", nargs="?", type=int, default=1, help="User id for the sub claim (default: 1)")
    parser.add_argument("--role", "-r", default="user", choices=sorted(set(ROLE_TABLE_PERMISSIONS) | set(ROLE_ALIASES)), help="Role claim (default: user)")
    parser.add_argument("--hours", type=int, default=1, help="Token lifetime in hours (default: 1)")
    parser.add_argument("--force", "-f", action="store_true", help="Regenerate keys even if they already exist")
    return parser.parse_args()


def generate_keys(force=False):
    """Generate RSA keys if they don't exist or if forced to regenerate"""
    if not force and os.path.exists(PUBLIC_KEY_FILE) and os.path.exists(PRIVATE_KEY_FILE):
        print("Keys already exist. Using existing keys.")
        return False

    print("Generating new RSA key pair...")
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    with open(PRIVATE_KEY_FILE, "wb") as f:
        f.write(private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption()
        ))

    with open(PUBLIC_KEY_FILE, "wb") as f:
        f.write(private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        ))
    return True


def update_env_file():
    """Point JWT_PUBLIC_KEY_PATH in .env at the generated public key"""
    line = f"JWT_PUBLIC_KEY_PATH={os.path.abspath(PUBLIC_KEY_FILE)}"
    lines = []
    if os.path.exists(ENV_FILE):
        with open(ENV_FILE, "r") as f:
            lines = [l for l in f.read().splitlines() if not l.startswith("JWT_PUBLIC_KEY_PATH=")]
    lines.append(line)
    with open(ENV_FILE, "w") as f:
        f.write("\n".join(lines) + "\n")
    print(f"Updated {ENV_FILE} with JWT_PUBLIC_KEY_PATH")


def keys_match(public_key_path=PUBLIC_KEY_FILE, private_key_path=PRIVATE_KEY_FILE):
    with open(public_key_path, "rb") as f:
        public_key = serialization.load_pem_public_key(f.read())
    with open(private_key_path, "rb") as f:
        private_key = serialization.load_pem_private_key(f.read(), password=None)
    return public_key.public_numbers() == private_key.public_key().public_numbers()


def make_token(user_id, role, hours=1):
    with open(PRIVATE_KEY_FILE, "r") as f:
        private_key = f.read()
    payload = {
        "sub": str(user_id),
        "role": role,
        "exp": datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=hours)
    }
    return jwt.encode(payload, private_key, algorithm="RS256")


if __name__ == "__main__":
    args = parse_args()
    generate_keys(args.force)
    update_env_file()

    if not keys_match():
        print("ERROR: public.pem and private.pem DO NOT match! JWT will not be valid.")
        raise SystemExit(1)

    token = make_token(args.user_id, args.role, args.hours)
    print(f"Generated JWT for user_id={args.user_id} role={args.role}:")
    print(token)
    print(f"\nPublic key: {os.path.abspath(PUBLIC_KEY_FILE)}")
