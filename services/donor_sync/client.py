"""
HTTPX client for the DonorPerfect XML API.

Stored procedures are called by name with ``@name=value`` parameters; SQL
queries go through the same endpoint. Responses are XML documents with
``record``/``field`` elements.

This client does NOT retry: every failure surfaces immediately as a
DonorPerfectAPIError so the caller decides what to do with the item.
"""

import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import structlog

from .errors import (
    DonorPerfectAPIError,
    RemoteProtocolError,
    RemoteRejectedError,
    RemoteTransportError,
)
from .log_config import log_api_call, mask_api_key

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://www.donorperfect.net/prod/xmlrequest.asp"

# Full parameter sets for the save procedures; DonorPerfect rejects calls
# that omit any of them.
DONOR_DEFAULTS: Dict[str, Any] = {
    "donor_id": 0,
    "first_name": None,
    "last_name": None,
    "middle_name": None,
    "suffix": None,
    "title": None,
    "salutation": None,
    "prof_title": None,
    "opt_line": None,
    "address": None,
    "address2": None,
    "city": None,
    "state": None,
    "zip": None,
    "country": None,
    "address_type": None,
    "home_phone": None,
    "business_phone": None,
    "fax_phone": None,
    "mobile_phone": None,
    "email": None,
    "org_rec": "N",
    "donor_type": "IN",
    "nomail": "N",
    "nomail_reason": None,
    "narrative": None,
    "donor_rcpt_type": "I",
    "user_id": None,
}

GIFT_DEFAULTS: Dict[str, Any] = {
    "gift_id": 0,
    "donor_id": 0,
    "record_type": "G",
    "gift_date": None,
    "amount": 0,
    "gl_code": "UN",
    "solicit_code": None,
    "sub_solicit_code": None,
    "campaign": None,
    "gift_type": "CC",
    "split_gift": "N",
    "pledge_payment": "N",
    "reference": None,
    "transaction_id": None,
    "memory_honor": None,
    "gfname": None,
    "glname": None,
    "fmv": 0,
    "batch_no": 0,
    "gift_narrative": None,
    "ty_letter_no": None,
    "glink": None,
    "plink": None,
    "nocalc": "N",
    "receipt": "N",
    "old_amount": None,
    "user_id": None,
    "gift_aid_date": None,
    "gift_aid_amt": None,
    "gift_aid_eligible_g": None,
    "currency": "USD",
    "first_gift": "N",
}

PLEDGE_DEFAULTS: Dict[str, Any] = {
    "gift_id": 0,
    "donor_id": 0,
    "gift_date": None,
    "start_date": None,
    "total": 0,  # 0 = open-ended pledge
    "bill": 0,
    "frequency": "M",
    "reminder": "N",
    "gl_code": "UN",
    "solicit_code": None,
    "initial_payment": "Y",
    "sub_solicit_code": None,
    "writeoff_amount": 0,
    "writeoff_date": None,
    "user_id": None,
    "campaign": None,
    "membership_type": None,
    "membership_level": None,
    "membership_enr_date": None,
    "membership_exp_date": None,
    "membership_link_ID": None,
    "address_id": None,
    "gift_narrative": None,
    "ty_letter_no": None,
    "vault_id": None,
    "receipt_delivery_g": None,
    "contact_id": None,
}

CODE_DEFAULTS: Dict[str, Any] = {
    "field_name": None,
    "code": None,
    "description": None,
    "original_code": None,
    "code_date": None,
    "mcat_hi": None,
    "mcat_lo": None,
    "mcat_gl": None,
    "reciprocal": None,
    "mailed": None,
    "printing": None,
    "other": None,
    "goal": None,
    "acct_num": None,
    "campaign": None,
    "solicit_code": None,
    "overwrite": None,
    "inactive": "N",
    "client_id": None,
    "available_for_sol": None,
    "user_id": None,
    "cashact": None,
    "membership_type": None,
    "leeway_days": None,
    "comments": None,
    "begin_date": None,
    "end_date": None,
    "ty_prioritize": None,
    "ty_filter_id": None,
    "ty_gift_option": None,
    "ty_amount_option": None,
    "ty_from_amount": None,
    "ty_to_amount": None,
    "ty_alternate": None,
    "ty_priority": None,
}


def quote_sql(value: str) -> str:
    """Escape a string literal by doubling embedded single quotes."""
    return str(value).replace("'", "''")


def encode_params(params: Dict[str, Any]) -> str:
    """
    Serialize procedure parameters as ``@name=value`` pairs.

    None becomes ``null``, numbers stay unquoted and everything else is
    single-quoted with embedded quotes doubled.

    Example:
        >>> encode_params({"donor_id": 0, "last_name": "O'Neil", "email": None})
        "@donor_id=0,@last_name='O''Neil',@email=null"
    """
    parts = []
    for key, value in params.items():
        if value is None:
            parts.append(f"@{key}=null")
        elif isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            parts.append(f"@{key}={value}")
        else:
            parts.append(f"@{key}='{quote_sql(value)}'")
    return ",".join(parts)


@dataclass
class DPResponse:
    """Parsed DonorPerfect XML response."""
    records: List[Dict[str, str]] = field(default_factory=list)

    @property
    def has_records(self) -> bool:
        return bool(self.records)

    def first_value(self, name: str) -> Optional[str]:
        """Value of a named field in the first record, or None."""
        if not self.records:
            return None
        return self.records[0].get(name)

    def extract_id(self, *names: str) -> int:
        """
        Extract the id returned by a save procedure.

        Prefers the first of ``names`` present in the first record and falls
        back to the record's first field.

        Raises:
            RemoteProtocolError: No record or a non-integer id
        """
        if not self.records or not self.records[0]:
            raise RemoteProtocolError("No ID returned from API")

        record = self.records[0]
        raw = next((record[n] for n in names if n in record), None)
        if raw is None:
            raw = next(iter(record.values()))

        try:
            return int(raw)
        except (TypeError, ValueError) as exc:
            raise RemoteProtocolError(f"Invalid ID returned from API: {raw!r}") from exc


def parse_response(body: str) -> DPResponse:
    """
    Parse a DonorPerfect XML response body.

    Raises:
        RemoteProtocolError: Body is not XML
        RemoteRejectedError: Response signals a failure
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as exc:
        raise RemoteProtocolError(f"Failed to parse XML: {body[:500]}") from exc

    status_field = root.find("field")
    if status_field is not None and status_field.get("value") == "false":
        raise RemoteRejectedError(status_field.get("reason"))

    if root.tag == "error":
        raise RemoteRejectedError((root.text or "").strip() or None)

    error = root.find("error")
    if error is not None:
        raise RemoteRejectedError((error.text or "").strip() or None)

    records = []
    for record in root.iter("record"):
        records.append({
            f.get("name"): f.get("value")
            for f in record.findall("field")
            if f.get("name") is not None
        })

    return DPResponse(records=records)


class DonorPerfectClient:
    """
    DonorPerfect XML API client.

    Features:
    - Named-parameter stored procedure calls and SQL queries
    - Structured errors: transport, protocol, rejection
    - Bounded per-call timeout, no retries
    - Structured logging of every call
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        user_id: str = "DonationSync",
        http_client: Optional[httpx.Client] = None,
    ):
        """
        Initialize DonorPerfect client.

        Args:
            api_key: DonorPerfect API key
            base_url: XML API endpoint
            timeout: Request timeout in seconds
            user_id: Audit user id stamped on created records
            http_client: Pre-built httpx.Client (tests, custom transports)
        """
        self.api_key = api_key
        self.base_url = base_url
        self.user_id = user_id
        self._client = http_client or httpx.Client(timeout=timeout)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._client.close()

    def close(self):
        """Close the underlying HTTP client."""
        self._client.close()

    def _execute(self, params: Dict[str, str], log_action: str) -> DPResponse:
        start = time.monotonic()
        try:
            response = self._client.get(self.base_url, params={"apikey": self.api_key, **params})
        except httpx.TimeoutException as exc:
            error = RemoteTransportError(mask_api_key(f"Request timed out: {exc}"))
            log_api_call(logger, log_action, (time.monotonic() - start) * 1000, error=str(error))
            raise error from exc
        except httpx.HTTPError as exc:
            error = RemoteTransportError(mask_api_key(f"Request failed: {exc}"))
            log_api_call(logger, log_action, (time.monotonic() - start) * 1000, error=str(error))
            raise error from exc

        duration_ms = (time.monotonic() - start) * 1000

        if response.status_code != 200:
            error = RemoteTransportError(f"HTTP {response.status_code}: {response.text[:500]}")
            log_api_call(
                logger, log_action, duration_ms,
                error=str(error), status_code=response.status_code
            )
            raise error

        try:
            result = parse_response(response.text)
        except DonorPerfectAPIError as exc:
            log_api_call(logger, log_action, duration_ms, error=str(exc))
            raise

        log_api_call(logger, log_action, duration_ms, records=len(result.records))
        return result

    def call_procedure(self, action: str, params: Dict[str, Any]) -> DPResponse:
        """
        Execute a stored procedure with named parameters.

        Raises:
            DonorPerfectAPIError: Transport, protocol or rejection failure
        """
        return self._execute(
            {"action": action, "params": encode_params(params)}, action
        )

    def query(self, sql: str) -> DPResponse:
        """
        Execute a direct SQL query (SELECT only).

        Raises:
            DonorPerfectAPIError: Transport, protocol or rejection failure
        """
        return self._execute({"action": sql}, "query")

    def lookup_donor_by_email(self, email: str) -> Optional[int]:
        """
        Find a donor id by email address.

        Raises:
            DonorPerfectAPIError: Lookup could not be performed
        """
        result = self.query(f"SELECT TOP 1 donor_id FROM dp WHERE email='{quote_sql(email)}'")
        value = result.first_value("donor_id")
        if value is None:
            return None
        try:
            return int(value)
        except ValueError as exc:
            raise RemoteProtocolError(f"Invalid donor_id returned: {value!r}") from exc

    def find_donor_by_email(self, email: str) -> Optional[int]:
        """Find a donor id by email; a failed lookup is logged and reads as not found."""
        try:
            return self.lookup_donor_by_email(email)
        except DonorPerfectAPIError as exc:
            logger.warning(
                "Donor lookup failed",
                error=str(exc),
                error_type=type(exc).__name__
            )
            return None

    def _save(self, action: str, defaults: Dict[str, Any], fields: Dict[str, Any], *id_names: str) -> int:
        params = {**defaults, "user_id": self.user_id}
        params.update(fields)
        return self.call_procedure(action, params).extract_id(*id_names)

    def create_donor(self, fields: Dict[str, Any]) -> int:
        """Create a donor (dp_savedonor) and return the new donor id."""
        return self._save("dp_savedonor", DONOR_DEFAULTS, fields, "donor_id")

    def create_gift(self, fields: Dict[str, Any]) -> int:
        """Create a gift (dp_savegift) and return the new gift id."""
        return self._save("dp_savegift", GIFT_DEFAULTS, fields, "gift_id")

    def create_pledge(self, fields: Dict[str, Any]) -> int:
        """
        Create a pledge (dp_savepledge) and return the new pledge gift id.

        ``total=0`` makes the pledge open-ended; ``bill`` is the per-period amount.
        """
        return self._save("dp_savepledge", PLEDGE_DEFAULTS, fields, "gift_id", "pledge_id")

    def create_code(self, field_name: str, code: str, description: str) -> DPResponse:
        """Create a code value in DPCODES (dp_savecode)."""
        params = {**CODE_DEFAULTS, "user_id": self.user_id}
        params.update({"field_name": field_name, "code": code, "description": description})
        return self.call_procedure("dp_savecode", params)

    def code_exists(self, field_name: str, code: str) -> bool:
        """Check whether a code exists in DPCODES; failures read as missing."""
        try:
            result = self.query(
                "SELECT code FROM DPCODES "
                f"WHERE field_name='{quote_sql(field_name)}' AND code='{quote_sql(code)}'"
            )
        except DonorPerfectAPIError as exc:
            logger.warning("Code lookup failed", field_name=field_name, code=code, error=str(exc))
            return False
        return result.has_records

    def test_connection(self) -> Dict[str, Any]:
        """
        Verify connectivity and count donors.

        Raises:
            DonorPerfectAPIError: API is unreachable or rejects the key
        """
        self.query("SELECT TOP 1 donor_id FROM dp WHERE donor_id > 0")

        total = 0
        try:
            count = self.query("SELECT COUNT(*) AS total FROM dp WHERE donor_id > 0")
            total = int(count.first_value("total") or 0)
        except (DonorPerfectAPIError, ValueError) as exc:
            logger.warning("Donor count failed", error=str(exc))

        return {
            "status": "connected",
            "message": f"API connected successfully. {total} donors in DonorPerfect.",
            "donors": total,
        }

    def check_codes(self, gl_code: Optional[str], campaign: Optional[str]) -> Dict[str, Dict[str, Any]]:
        """Check that the codes used by the sync exist in DonorPerfect."""
        checks: Dict[str, Dict[str, Any]] = {}

        if gl_code:
            checks["gl_code"] = {"code": gl_code, "valid": self.code_exists("GL_CODE", gl_code)}

        if campaign:
            checks["campaign"] = {"code": campaign, "valid": self.code_exists("CAMPAIGN", campaign)}

        for key, code in (("onetime", "ONETIME"), ("recurring", "RECURRING")):
            checks[key] = {"code": code, "valid": self.code_exists("SUB_SOLICIT_CODE", code)}

        return checks
