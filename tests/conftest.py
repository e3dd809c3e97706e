import sys, os, datetime, subprocess
from pathlib import Path

# Ensure repo root is importable for all tests.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

import pkiLint


def _makeCert(commonName, issuerName=None, issuerKey=None, ca=False):
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, commonName)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = x509.CertificateBuilder().subject_name(
        subject
    ).issuer_name(
        issuerName or subject
    ).public_key(
        key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        now
    ).not_valid_after(
        now + datetime.timedelta(days=90)
    ).add_extension(
        x509.BasicConstraints(ca=ca, path_length=None), critical=True
    ).sign(issuerKey or key, hashes.SHA256())
    return cert, key


@pytest.fixture(scope="session")
def certs():
    """A root CA and a leaf certificate issued by it"""
    caCert, caKey = _makeCert("Test Root CA", ca=True)
    leafCert, _ = _makeCert("example.com", issuerName=caCert.subject, issuerKey=caKey)
    return caCert, leafCert


@pytest.fixture
def certFile(tmp_path, certs):
    path = tmp_path / "leaf.crt"
    path.write_bytes(certs[1].public_bytes(serialization.Encoding.PEM))
    return str(path)


@pytest.fixture
def chainFile(tmp_path, certs):
    path = tmp_path / "chain.pem"
    path.write_bytes(certs[0].public_bytes(serialization.Encoding.PEM))
    return str(path)


@pytest.fixture
def lintsDir(tmp_path, monkeypatch):
    """A lints directory holding placeholder binaries for every linter."""
    root = tmp_path / "lints"
    for relPath in list(pkiLint.x509lints.X509LINT_BINS.values()) + [
            pkiLint.x509lints.ZLINT_BIN, pkiLint.x509lints.AWS_CERTLINT_BIN,
            pkiLint.x509lints.GS_CERTLINT_BIN, pkiLint.x509lints.EV_CHECKER_BIN,
            "golang/keysize.go"]:
        path = root / relPath
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("placeholder\n")
    monkeypatch.setattr(pkiLint.shutil, "which", lambda tool: "/usr/bin/" + tool)
    return str(root)


class fakeRunner:
    """Stands in for subprocess.run, answering per linter.

    responses maps a linter key to (stdout, returncode, stderr) or to an
    exception instance that is raised instead."""

    def __init__(self):
        self.responses = {}
        self.calls = []

    @staticmethod
    def keyFor(command):
        if command[0] == "ruby":
            return "aws-certlint"
        if command[0] == "go":
            return "golang"
        if command[0] == "./gs-certlint":
            return "gs-certlint"
        if command[0].endswith("ev-checker"):
            return "ev-checker"
        if command[0].endswith("zlint"):
            return "zlint"
        if os.path.basename(command[0]).startswith("x509lint-"):
            return "x509lint"
        raise AssertionError("unexpected command: %r" % (command, ))

    def __call__(self, command, cwd=None, **kwargs):
        key = self.keyFor(command)
        existing = {arg: Path(arg).read_bytes() for arg in command[1:] if os.path.isfile(arg)}
        self.calls.append((key, command, cwd, existing))
        response = self.responses.get(key, ("", 0, ""))
        if isinstance(response, Exception):
            raise response
        (stdout, returncode, stderr) = response
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)


@pytest.fixture
def runner(monkeypatch):
    fake = fakeRunner()
    monkeypatch.setattr(pkiLint.subprocess, "run", fake)
    return fake
