#!/usr/bin/env python3

#
# pull the signer name and subject key identifier out of a DER X.509 cert,
# so whatever does the actual signing can stuff them into its trailer.
#
# Only knows enough DER to walk a TBSCertificate; it doesn't validate
# anything, it just finds stuff.
#
# Usage: $0 [-opts] {signer-name|keyid} cert.der
#

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Union

import pydantic

from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization


# 10 megs... a cert that big is not a cert
MAX_FILE_SIZE = 1024 * 1024 * 10

PEM_START = b"-----BEGIN CERTIFICATE-----"

logger = logging.getLogger("signerid")


class Settings(pydantic.BaseModel):
    """Application settings."""
    mode:           str
    verbose:        bool = False
    debug:          bool = False
    max_file_size:  int  = MAX_FILE_SIZE
    accept_pem:     bool = True


#
# everything that stops us from producing output
#
class SignerIdError(Exception):
    """Base class for fatal extraction errors."""


class DERError(SignerIdError):
    """The input isn't the DER we were promised.

    ``offset`` is the absolute position in the certificate buffer of the
    element whose header or value is broken.
    """

    def __init__(self, offset: int, message: str):
        super().__init__(f"offset {offset}: {message}")
        self.offset = offset


class TruncatedError(DERError):
    """Not enough bytes left for a declared structure."""


class UnexpectedTagError(DERError):
    """A mandatory field carries the wrong tag."""

    def __init__(self, offset: int, expected: int, found: int):
        super().__init__(offset, f"expected tag 0x{expected:02x}, found 0x{found:02x}")
        self.expected = expected
        self.found = found


class UnsupportedTagError(DERError):
    """Long-form (multi-octet) tag numbers."""

    def __init__(self, offset: int, tag: int):
        super().__init__(offset, f"long-form tag 0x{tag:02x} is not supported")
        self.tag = tag


class IndefiniteLengthError(DERError):
    def __init__(self, offset: int):
        super().__init__(offset, "indefinite length is not allowed in DER")


class LengthTooLargeError(DERError):
    def __init__(self, offset: int, octets: int):
        super().__init__(offset, f"length needs {octets} octets, at most 4 supported")
        self.octets = octets


class MissingExtensionError(SignerIdError):
    """The certificate has no subjectKeyIdentifier."""


class UnsupportedOutputModeError(SignerIdError):
    def __init__(self, mode: str):
        super().__init__(f"unsupported output mode '{mode}' (want 'signer-name' or 'keyid')")
        self.mode = mode


class CertificateFileError(SignerIdError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"can't use '{path}': {reason}")
        self.path = path


class OIDRegistry:
    """Registry of the OIDs we know, keyed on raw DER content bytes.

    Nothing here is ever turned into dotted form; lookups match the bytes
    exactly as they sit in the certificate.
    """

    oids = {
        # attribute types, 2.5.4.x
        b"\x55\x04\x03": "commonName",
        b"\x55\x04\x06": "countryName",
        b"\x55\x04\x07": "localityName",
        b"\x55\x04\x08": "stateOrProvinceName",
        b"\x55\x04\x0a": "organizationName",
        b"\x55\x04\x0b": "organizationalUnitName",

        # 1.2.840.113549.1.9.1
        b"\x2a\x86\x48\x86\xf7\x0d\x01\x09\x01": "emailAddress",

        # certificate extensions, 2.5.29.x
        b"\x55\x1d\x0e": "subjectKeyIdentifier",
        b"\x55\x1d\x0f": "keyUsage",
        b"\x55\x1d\x11": "subjectAltName",
        b"\x55\x1d\x13": "basicConstraints",
        b"\x55\x1d\x23": "authorityKeyIdentifier",
        b"\x55\x1d\x25": "extKeyUsage",
    }

    @classmethod
    def lookup(cls, oid: bytes) -> Optional[str]:
        """Get the symbolic name for raw OID bytes, or None if we don't know it."""
        return cls.oids.get(bytes(oid))


#
# DER plumbing
#
class Tag:
    """Tag octets used by the certificate schema."""
    BOOLEAN         = 0x01
    INTEGER         = 0x02
    BIT_STRING      = 0x03
    OCTET_STRING    = 0x04
    OID             = 0x06
    SEQUENCE        = 0x30
    SET             = 0x31

    # context-specific TBSCertificate fields
    VERSION         = 0xA0
    ISSUER_UID      = 0x81
    SUBJECT_UID     = 0x82
    EXTENSIONS      = 0xA3

    # low 5 bits all set => tag number continues in following octets
    LONG_FORM       = 0x1F


# match whatever tag comes next
ANY = None


class Absent(Enum):
    """An OPTIONAL field that isn't there."""
    ABSENT = "absent"


ABSENT = Absent.ABSENT


class Cursor:
    """A position + remaining-length view over an immutable byte buffer.

    A cursor belongs to whoever is walking that container. Extracting from
    it hands back a brand new cursor for the element's value, so the two
    never share state.
    """

    __slots__ = ("data", "offset", "remaining")

    def __init__(self, data: bytes, offset: int = 0, remaining: Optional[int] = None):
        if remaining is None:
            remaining = len(data) - offset
        if offset < 0 or remaining < 0 or offset + remaining > len(data):
            raise ValueError(f"cursor at {offset}+{remaining} is outside a {len(data)} byte buffer")
        self.data       = data
        self.offset     = offset
        self.remaining  = remaining

    def __repr__(self) -> str:
        return f"Cursor(offset={self.offset}, remaining={self.remaining})"

    def at_end(self) -> bool:
        return self.remaining == 0

    def fork(self) -> "Cursor":
        """Independent cursor over the same region."""
        return Cursor(self.data, self.offset, self.remaining)

    def tobytes(self) -> bytes:
        return bytes(self.data[self.offset:self.offset + self.remaining])

    def extract(self, expected_tag: Optional[int] = ANY, optional: bool = False) -> Union["Element", Absent]:
        return extract(self, expected_tag, optional)

    def _advance(self, count: int) -> None:
        self.offset     += count
        self.remaining  -= count


@dataclass(frozen=True)
class Element:
    """One tag-length-value element.

    ``value`` is handed to the caller to walk, so the element keeps its own
    copy of where things were.
    """
    tag:            int
    value:          Cursor
    offset:         int
    header_length:  int
    length:         int

    def raw(self) -> bytes:
        """The whole encoding, tag and length octets included."""
        end = self.offset + self.header_length + self.length
        return bytes(self.value.data[self.offset:end])


def extract(cursor: Cursor, expected_tag: Optional[int] = ANY, optional: bool = False) -> Union[Element, Absent]:
    """Consume one TLV element from the cursor.

    Args:
        cursor:       cursor to read from; advanced past the element on success
        expected_tag: tag octet the element must carry, or ANY
        optional:     return ABSENT instead of failing when the cursor is
                      empty or the tag doesn't match (cursor left alone)

    Returns: the Element, or ABSENT

    Raises:  DERError subclasses for anything structurally wrong
    """
    start = cursor.offset
    data = cursor.data

    if optional and cursor.remaining == 0:
        return ABSENT

    if cursor.remaining < 2:
        raise TruncatedError(start, f"need 2 bytes for tag and length, have {cursor.remaining}")

    tag = data[start]
    if tag & Tag.LONG_FORM == Tag.LONG_FORM:
        raise UnsupportedTagError(start, tag)

    if expected_tag is not ANY and tag != expected_tag:
        if optional:
            return ABSENT
        raise UnexpectedTagError(start, expected_tag, tag)

    length = data[start + 1]
    header = 2
    if length == 0x80:
        raise IndefiniteLengthError(start)

    if length > 0x80:
        octets = length & 0x7F
        if octets > 4:
            raise LengthTooLargeError(start, octets)
        if cursor.remaining - header < octets:
            raise TruncatedError(start, f"need {octets} length octets, have {cursor.remaining - header}")
        length = int.from_bytes(data[start + header:start + header + octets], "big")
        header += octets

    if cursor.remaining - header < length:
        raise TruncatedError(start, f"element wants {length} bytes, have {cursor.remaining - header}")

    value = Cursor(data, start + header, length)
    cursor._advance(header + length)
    return Element(tag, value, start, header, length)


#
# the TBSCertificate, one field at a time
#
@dataclass
class TBSCertificate:
    """Value cursors for each TBSCertificate field, in schema order."""
    version:            Optional[Cursor]
    serial_number:      Cursor
    signature:          Cursor
    issuer:             Cursor
    validity:           Cursor
    subject:            Cursor
    public_key_info:    Cursor
    issuer_unique_id:   Optional[Cursor] = None
    subject_unique_id:  Optional[Cursor] = None
    extensions:         Optional[Cursor] = None


def _optional_field(tbs: Cursor, tag: int) -> Optional[Cursor]:
    element = tbs.extract(tag, optional=True)
    if element is ABSENT:
        return None
    return element.value


def walk_certificate(data: bytes) -> TBSCertificate:
    """Walk the fixed X.509 field sequence of a DER certificate.

    Args:    data: the whole DER certificate
    Returns: cursors for every TBSCertificate field

    """
    root = Cursor(data)
    certificate = root.extract(Tag.SEQUENCE).value
    if not root.at_end():
        logger.debug(f"Ignoring {root.remaining} bytes after the certificate")

    # signatureAlgorithm and signatureValue follow the TBS; nobody here checks them
    tbs = certificate.extract(Tag.SEQUENCE).value

    version         = _optional_field(tbs, Tag.VERSION)
    serial_number   = tbs.extract(Tag.INTEGER).value
    signature       = tbs.extract(Tag.SEQUENCE).value
    issuer          = tbs.extract(Tag.SEQUENCE).value
    validity        = tbs.extract(Tag.SEQUENCE).value
    subject         = tbs.extract(Tag.SEQUENCE).value
    public_key_info = tbs.extract(Tag.SEQUENCE).value
    issuer_uid      = _optional_field(tbs, Tag.ISSUER_UID)
    subject_uid     = _optional_field(tbs, Tag.SUBJECT_UID)
    extensions      = _optional_field(tbs, Tag.EXTENSIONS)

    logger.debug(f"TBSCertificate: version {'present' if version is not None else 'absent'}, "
                 f"subject at {subject.offset}, "
                 f"extensions {'present' if extensions is not None else 'absent'}")

    return TBSCertificate(
        version             = version,
        serial_number       = serial_number,
        signature           = signature,
        issuer              = issuer,
        validity            = validity,
        subject             = subject,
        public_key_info     = public_key_info,
        issuer_unique_id    = issuer_uid,
        subject_unique_id   = subject_uid,
        extensions          = extensions,
    )


#
# extensions
#
@dataclass
class Extension:
    """A recognised extension; unknown ones never get this far."""
    name:       str
    critical:   bool
    value:      Cursor


def iter_extensions(container: Cursor) -> Iterator[Extension]:
    """Yield each recognised extension in an [3] extensions container.

    Args: container: value cursor of the [3] field (left untouched)
    """
    extensions = container.fork().extract(Tag.SEQUENCE).value

    while not extensions.at_end():
        extension = extensions.extract(Tag.SEQUENCE).value
        oid = extension.extract(Tag.OID).value.tobytes()
        critical = extension.extract(Tag.BOOLEAN, optional=True)
        value = extension.extract(Tag.OCTET_STRING).value

        name = OIDRegistry.lookup(oid)
        if name is None:
            logger.debug(f"Skipping unknown extension {oid.hex()}")
            continue

        yield Extension(
            name     = name,
            critical = critical is not ABSENT and any(critical.value.tobytes()),
            value    = value,
        )


def find_subject_key_id(tbs: TBSCertificate) -> bytes:
    """Get the subjectKeyIdentifier out of the certificate's extensions.

    Args:    tbs: walked certificate
    Returns: the key identifier bytes (the inner OCTET STRING)

    Raises:  MissingExtensionError if there isn't one
    """
    if tbs.extensions is None:
        raise MissingExtensionError("certificate has no extensions, so no subjectKeyIdentifier")

    key_id = None
    for extension in iter_extensions(tbs.extensions):
        if extension.name != "subjectKeyIdentifier":
            logger.debug(f"Not interested in {extension.name}")
            continue

        # the extension value wraps another OCTET STRING holding the actual id
        inner = extension.value.fork().extract(Tag.OCTET_STRING).value.tobytes()
        if key_id is not None:
            logger.debug("Ignoring repeated subjectKeyIdentifier extension")
            continue
        key_id = inner

    if key_id is None:
        raise MissingExtensionError("certificate has no subjectKeyIdentifier extension")

    logger.debug(f"subjectKeyIdentifier: {key_id.hex()}")
    return key_id


#
# who signed this thing?
#
@dataclass
class SubjectIdentity:
    """The subject attributes we build a signer name from (raw bytes)."""
    organization:   Optional[bytes] = None
    common_name:    Optional[bytes] = None
    email_address:  Optional[bytes] = None

    def signer_name(self) -> bytes:
        """Pick a human readable signer name.

        Org and CN together usually repeat each other, so only glue them
        together when they look unrelated.
        """
        org = self.organization or b""
        cn = self.common_name or b""

        if org and cn:
            if cn.startswith(org):
                return cn
            if len(org) >= 7 and len(cn) >= 7 and org[:7] == cn[:7]:
                return cn
            return org + b": " + cn

        if org:
            return org
        if cn:
            return cn

        return self.email_address or b""


def resolve_subject(subject: Cursor) -> SubjectIdentity:
    """Collect organizationName, commonName and emailAddress from a subject Name.

    Only the first attribute of each RDN is looked at; if an attribute
    shows up more than once the last one wins.

    Args: subject: value cursor of the subject SEQUENCE (left untouched)
    """
    identity = SubjectIdentity()
    names = subject.fork()

    while not names.at_end():
        rdn = names.extract(Tag.SET).value
        attribute = rdn.extract(Tag.SEQUENCE).value
        oid = attribute.extract(Tag.OID).value.tobytes()
        # PrintableString, UTF8String, IA5String... take the bytes whatever it is
        value = attribute.extract(ANY).value.tobytes()

        name = OIDRegistry.lookup(oid)
        if name == "organizationName":
            identity.organization = value
        elif name == "commonName":
            identity.common_name = value
        elif name == "emailAddress":
            identity.email_address = value
        else:
            logger.debug(f"Skipping subject attribute {name or oid.hex()}")

    return identity


@dataclass(frozen=True)
class SignerIdentity:
    """What the signing step needs from the certificate."""
    signer_name:    bytes
    key_id:         bytes


def extract_signer_identity(data: bytes) -> SignerIdentity:
    """Parse a DER certificate and pull out the signer name and key id.

    All or nothing: any structural problem, or a missing subjectKeyIdentifier,
    raises and nothing is returned.
    """
    tbs = walk_certificate(data)
    key_id = find_subject_key_id(tbs)
    signer_name = resolve_subject(tbs.subject).signer_name()

    logger.info(f"Signer name: {signer_name!r}")
    return SignerIdentity(signer_name=signer_name, key_id=key_id)


#
# what to print
#
class OutputMode(Enum):
    """The two things we know how to emit."""
    SIGNER_NAME = "signer-name"
    KEYID       = "keyid"

    @classmethod
    def from_string(cls, mode: str) -> "OutputMode":
        try:
            return cls(mode)
        except ValueError:
            raise UnsupportedOutputModeError(mode) from None


def render(identity: SignerIdentity, mode: OutputMode) -> bytes:
    """Raw bytes for the requested mode; no newline, no re-encoding."""
    if mode is OutputMode.SIGNER_NAME:
        return identity.signer_name
    return identity.key_id


class SignerId:
    """Main class: one certificate file in, one value out."""

    def __init__(self, settings: Settings):
        """Initialize the extractor.

        Args:
            settings: Application settings

        Raises: UnsupportedOutputModeError for a mode we can't emit
        """
        self.settings = settings
        self.mode = OutputMode.from_string(settings.mode)

        # Configure logging based on settings
        if settings.debug:
            logger.setLevel(logging.DEBUG)
        elif settings.verbose:
            logger.setLevel(logging.INFO)
        else:
            logger.setLevel(logging.WARNING)

    def process_file(self, filename: str) -> bytes:
        """Read, parse and render one certificate; nothing partial ever comes back."""
        logger.info(f"Processing {filename}")
        data = self.load_certificate(filename)
        identity = extract_signer_identity(data)
        return render(identity, self.mode)

    def load_certificate(self, filename: str) -> bytes:
        """Read the certificate file in one go.

        PEM is converted to DER on the way in (unless settings say not to);
        the parser itself only ever sees DER.
        """
        if not os.path.isfile(filename):
            raise CertificateFileError(filename, "not a file")

        if os.stat(filename).st_size > self.settings.max_file_size:
            raise CertificateFileError(filename, f"larger than maximum allowed ({self.settings.max_file_size} bytes)")

        try:
            with open(filename, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise CertificateFileError(filename, e.strerror or str(e)) from e

        if self._looks_like_pem(data):
            logger.info(f"{filename} looks like PEM, converting to DER")
            try:
                cert = x509.load_pem_x509_certificate(data, default_backend())
            except ValueError as e:
                raise CertificateFileError(filename, f"unreadable PEM certificate: {e}") from e
            data = cert.public_bytes(serialization.Encoding.DER)

        return data

    def _looks_like_pem(self, data: bytes) -> bool:
        # a DER cert starts with its SEQUENCE tag, whatever text its fields carry
        if not self.settings.accept_pem or data[:1] == bytes([Tag.SEQUENCE]):
            return False
        return PEM_START in data


#
# what goes on in CLI-land?
#
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns: Parsed arguments

    """

    parser = argparse.ArgumentParser(
        description="Extract the signer name or subject key identifier from an X.509 certificate"
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable debug output"
    )
    parser.add_argument(
        "--der-only",
        action="store_true",
        help="Don't convert PEM input, insist on DER"
    )
    parser.add_argument(
        "--max_file_size",
        "-m",
        type=int,
        default=MAX_FILE_SIZE,
        help="Maximum size in bytes of the certificate file"
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output"
    )
    parser.add_argument(
        "mode",
        metavar="MODE",
        help="What to print: signer-name or keyid"
    )
    parser.add_argument(
        "certificate",
        metavar="CERTIFICATE",
        help="DER encoded certificate file"
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Run the tool; returns the exit status."""
    args = parse_args(argv)

    settings = Settings(
        mode            = args.mode,
        verbose         = args.verbose,
        debug           = args.debug,
        max_file_size   = args.max_file_size,
        accept_pem      = not args.der_only
    )

    try:
        signerid = SignerId(settings)
        output = signerid.process_file(args.certificate)
    except SignerIdError as e:
        logger.error(f"{args.certificate}: {type(e).__name__}: {e}")
        return 1

    #
    # only now that everything worked does anything hit stdout
    #
    out = sys.stdout.buffer
    out.write(output)
    out.flush()
    return 0


def cli() -> None:
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.INFO
    )
    sys.exit(main())


if __name__ == "__main__":
    cli()
