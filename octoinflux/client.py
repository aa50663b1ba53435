"""Octopus Energy API client module.

This module handles:
- Exchanging credentials for a Kraken token (GraphQL obtainKrakenToken)
- Requesting single consumption pages (REST consumption endpoint or
  GraphQL measurements connection)
- Requesting single tariff rate pages (standard unit rates, standing charges)
- Account lookup used to discover meters
- Decoding page payloads into a small set of known page shapes

The client performs exactly one HTTP request per call. Retrying, cursor
following and token caching live in the auth and fetcher modules.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import requests

from octoinflux.models import ELECTRICITY, Credential, Meter, RawReading, TariffWindow, Token

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.octopus.energy"

# Kraken tokens last an hour; used when the response carries no expiry
DEFAULT_TOKEN_LIFETIME = timedelta(minutes=60)

OBTAIN_TOKEN_MUTATION = """
mutation obtainKrakenToken($input: ObtainJSONWebTokenInput!) {
  obtainKrakenToken(input: $input) {
    token
    payload
    refreshToken
    refreshExpiresIn
  }
}
"""

MEASUREMENTS_QUERY = """
query meterMeasurements(
  $accountNumber: String!
  $first: Int!
  $after: String
  $startAt: DateTime
  $utilityFilters: [UtilityFiltersInput]
  $withAgreements: Boolean!
) {
  account(accountNumber: $accountNumber) {
    properties {
      electricityMeterPoints @include(if: $withAgreements) {
        mpan
        agreements {
          validFrom
          validTo
          tariff {
            ... on StandardTariff { unitRate standingCharge }
          }
        }
      }
      gasMeterPoints @include(if: $withAgreements) {
        mprn
        agreements {
          validFrom
          validTo
          tariff {
            ... on GasTariffType { unitRate standingCharge }
          }
        }
      }
      measurements(first: $first, after: $after, startAt: $startAt, utilityFilters: $utilityFilters) {
        edges {
          node {
            value
            unit
            ... on IntervalMeasurementType { startAt endAt }
          }
        }
        pageInfo { hasNextPage endCursor }
      }
    }
  }
}
"""

# Page variants
REST_CONSUMPTION = "rest-consumption"
GRAPHQL_MEASUREMENTS = "graphql-measurements"

AUTHORIZATION_ERROR_TYPES = ("AUTHORIZATION", "AUTHENTICATION")


class OctopusError(Exception):
    """Base exception for Octopus API errors."""
    pass


class AuthError(OctopusError):
    """Exception raised when a token cannot be obtained."""
    pass


class InvalidCredentialError(AuthError):
    """The provider rejected the credential. Retrying will not help."""
    pass


class TransientAuthError(AuthError):
    """Token exchange failed for a network or server-side reason."""
    pass


class FetchError(OctopusError):
    """Exception raised when a page cannot be fetched."""
    pass


class TransientFetchError(FetchError):
    """A page request failed but may succeed if repeated."""
    pass


class UnauthorizedError(TransientFetchError):
    """The provider refused the token; a fresh one may succeed."""
    pass


class ExhaustedRetriesError(FetchError):
    """A page kept failing until the retry policy gave up."""
    pass


class MalformedPageError(FetchError):
    """A response did not match any known page shape."""
    pass


@dataclass(frozen=True)
class Page:
    """One decoded consumption page.

    Attributes:
        kind: Which page shape the payload matched
        readings: Raw readings on this page, in provider order
        tariff_windows: Tariff windows declared on this page
        next_cursor: Continuation marker, None on the final page
    """
    kind: str
    readings: List[RawReading] = field(default_factory=list)
    tariff_windows: List[TariffWindow] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass(frozen=True)
class RatesPage:
    """One decoded page of a tariff rate listing (unit rates or standing charges)."""
    rates: List[dict] = field(default_factory=list)
    next_cursor: Optional[str] = None


def parse_api_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an offset-carrying API timestamp into aware UTC, None stays None.

    Raises:
        ValueError: If the value is not ISO-8601 or carries no offset
    """
    if value is None:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        raise ValueError(f"Timestamp has no UTC offset: {value}")
    return parsed.astimezone(timezone.utc)


def _decode_rest_consumption(payload: dict, meter: Meter) -> Page:
    results = payload["results"]
    if not isinstance(results, list):
        raise MalformedPageError("REST page 'results' is not a list")

    readings = []
    for index, item in enumerate(results):
        if not isinstance(item, dict):
            item, defect = {}, f"REST result {index} is not an object"
        elif "consumption" not in item or "interval_start" not in item:
            defect = f"REST result {index} lacks consumption/interval_start"
        else:
            defect = None
        readings.append(RawReading(
            meter_id=meter.meter_id,
            value=item.get("consumption"),
            unit=meter.unit,
            interval_start=item.get("interval_start"),
            interval_end=item.get("interval_end"),
            mpxn=meter.mpxn,
            serial=meter.serial,
            defect=defect,
        ))

    next_cursor = payload.get("next")
    if next_cursor is not None and not isinstance(next_cursor, str):
        raise MalformedPageError("REST page 'next' is not a string")

    return Page(kind=REST_CONSUMPTION, readings=readings, next_cursor=next_cursor or None)


def _decode_agreements(properties: list, meter: Meter) -> List[TariffWindow]:
    """Turn the meter point's agreements into tariff windows, in declared order."""
    points_key, id_key = (
        ("electricityMeterPoints", "mpan") if meter.kind == ELECTRICITY else ("gasMeterPoints", "mprn")
    )
    windows = []
    for prop in properties:
        for point in prop.get(points_key) or []:
            if point.get(id_key) != meter.mpxn:
                continue
            for agreement in point.get("agreements") or []:
                tariff = agreement.get("tariff") or {}
                if tariff.get("unitRate") is None:
                    continue
                try:
                    windows.append(TariffWindow(
                        start=parse_api_datetime(agreement["validFrom"]),
                        end=parse_api_datetime(agreement.get("validTo")),
                        unit_rate=float(tariff["unitRate"]),
                        standing_charge=(
                            float(tariff["standingCharge"]) if tariff.get("standingCharge") is not None else None
                        ),
                        declared=len(windows),
                    ))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping unreadable agreement for {meter.mpxn}: {e}")
    return windows


def _decode_graphql_measurements(payload: dict, meter: Meter) -> Page:
    account = (payload.get("data") or {}).get("account")
    if not isinstance(account, dict) or not isinstance(account.get("properties"), list):
        raise MalformedPageError("GraphQL page has no account properties")
    properties = account["properties"]

    # The supply point filter leaves at most one property with measurements
    connections = [
        prop["measurements"] for prop in properties
        if isinstance(prop.get("measurements"), dict)
        and (prop["measurements"].get("edges") or (prop["measurements"].get("pageInfo") or {}).get("hasNextPage"))
    ]
    if len(connections) > 1:
        raise MalformedPageError(f"Measurements for {meter.mpxn} returned by {len(connections)} properties")

    readings = []
    next_cursor = None
    if connections:
        connection = connections[0]
        for index, edge in enumerate(connection.get("edges") or []):
            node = edge.get("node") if isinstance(edge, dict) else None
            if not isinstance(node, dict):
                node, defect = {}, f"Measurement edge {index} has no node"
            elif "value" not in node or "startAt" not in node:
                defect = f"Measurement edge {index} lacks value/startAt"
            else:
                defect = None
            readings.append(RawReading(
                meter_id=meter.meter_id,
                value=node.get("value"),
                unit=node.get("unit") or meter.unit,
                interval_start=node.get("startAt"),
                interval_end=node.get("endAt"),
                mpxn=meter.mpxn,
                serial=meter.serial,
                defect=defect,
            ))

        page_info = connection.get("pageInfo") or {}
        if page_info.get("hasNextPage"):
            next_cursor = page_info.get("endCursor")
            if not next_cursor:
                raise MalformedPageError("hasNextPage set without an endCursor")

    return Page(
        kind=GRAPHQL_MEASUREMENTS,
        readings=readings,
        tariff_windows=_decode_agreements(properties, meter),
        next_cursor=next_cursor,
    )


def decode_page(payload: object, meter: Meter) -> Page:
    """Decode a consumption page payload into a :class:`Page`.

    Known shapes are the REST consumption listing (``results`` + ``next``)
    and the GraphQL measurements connection. Anything else is rejected.
    A single unreadable record does not reject its page: it is returned as a
    RawReading carrying a ``defect``.

    Raises:
        MalformedPageError: If the payload matches no known page shape
    """
    if not isinstance(payload, dict):
        raise MalformedPageError(f"Page payload is {type(payload).__name__}, not an object")
    if "results" in payload:
        return _decode_rest_consumption(payload, meter)
    if "data" in payload:
        return _decode_graphql_measurements(payload, meter)
    raise MalformedPageError(f"Unknown page shape with keys {sorted(payload)}")


def decode_rates_page(payload: object) -> RatesPage:
    """Decode a REST unit-rate or standing-charge listing.

    Raises:
        MalformedPageError: If the payload is not a rate listing
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
        raise MalformedPageError("Rate page has no 'results' list")

    rates = []
    for index, item in enumerate(payload["results"]):
        if not isinstance(item, dict) or "valid_from" not in item or "value_inc_vat" not in item:
            raise MalformedPageError(f"Rate {index} lacks valid_from/value_inc_vat")
        rates.append(item)

    return RatesPage(rates=rates, next_cursor=payload.get("next") or None)


class OctopusClient:
    """Client for the Octopus Energy REST and GraphQL API.

    Attributes:
        base_url: API root, e.g. https://api.octopus.energy
        timeout: Per-request timeout in seconds
        page_size: Readings requested per page
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        page_size: int = 1000,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size
        self.session = session or requests.Session()
        self.session.headers.update({
            "User-Agent": "octo-influx",
            "Accept": "application/json",
        })

    @property
    def graphql_url(self) -> str:
        return f"{self.base_url}/v1/graphql/"

    def close(self) -> None:
        self.session.close()

    def _send(self, method: str, url: str, token: Optional[Token] = None, **kwargs) -> object:
        """Perform one request and return the decoded JSON body.

        Raises:
            UnauthorizedError: On 401/403
            TransientFetchError: On transport errors, timeouts and other HTTP errors
            MalformedPageError: If the body is not JSON
        """
        headers = kwargs.pop("headers", {})
        if token is not None:
            headers["Authorization"] = token.value

        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise TransientFetchError(f"Request to {url} timed out") from e
        except requests.RequestException as e:
            raise TransientFetchError(f"Request to {url} failed: {e}") from e

        if response.status_code in (401, 403):
            raise UnauthorizedError(f"HTTP {response.status_code} from {url}")
        if response.status_code >= 400:
            raise TransientFetchError(f"HTTP {response.status_code} from {url}")

        try:
            return response.json()
        except ValueError as e:
            raise MalformedPageError(f"Response from {url} is not JSON") from e

    def _graphql(self, query: str, variables: dict, token: Optional[Token] = None) -> dict:
        payload = self._send("POST", self.graphql_url, token, json={"query": query, "variables": variables})
        if not isinstance(payload, dict):
            raise MalformedPageError("GraphQL response is not an object")

        errors = payload.get("errors")
        if errors:
            first = errors[0] if isinstance(errors[0], dict) else {"message": str(errors[0])}
            message = first.get("message", "Unknown GraphQL error")
            error_type = (first.get("extensions") or {}).get("errorType")
            if error_type in AUTHORIZATION_ERROR_TYPES:
                raise UnauthorizedError(f"GraphQL error: {message}")
            raise TransientFetchError(f"GraphQL error: {message}")
        return payload

    def authenticate(self, credential: Credential, refresh_token: Optional[str] = None) -> Token:
        """Exchange a credential (or a refresh token) for an access token.

        Args:
            credential: API key or email/password
            refresh_token: Refresh token from a previous exchange, tried instead
                of the credential when given

        Returns:
            A fresh Token

        Raises:
            InvalidCredentialError: If the provider rejects the credential
            TransientAuthError: On network, timeout or server-side failures
        """
        if refresh_token:
            token_input = {"refreshToken": refresh_token}
        elif credential.api_key:
            token_input = {"APIKey": credential.api_key}
        else:
            token_input = {"email": credential.email, "password": credential.password}

        try:
            response = self.session.post(
                self.graphql_url,
                json={"query": OBTAIN_TOKEN_MUTATION, "variables": {"input": token_input}},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransientAuthError(f"Token request failed: {e}") from e

        if response.status_code in (400, 401, 403):
            raise InvalidCredentialError(f"Token request rejected with HTTP {response.status_code}")
        if response.status_code >= 400:
            raise TransientAuthError(f"Token request failed with HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise TransientAuthError("Token response is not JSON") from e
        if not isinstance(data, dict):
            raise TransientAuthError("Token response is not an object")

        errors = data.get("errors")
        if errors:
            first = errors[0] if isinstance(errors, list) and isinstance(errors[0], dict) else {}
            message = first.get("message", "Unknown error")
            raise InvalidCredentialError(f"Token request rejected: {message}")

        result = data.get("data")
        token_data = result.get("obtainKrakenToken") if isinstance(result, dict) else None
        if not isinstance(token_data, dict) or not token_data.get("token"):
            raise TransientAuthError("Token response carried no token")

        payload = token_data.get("payload")
        exp = payload.get("exp") if isinstance(payload, dict) else None
        if exp is not None:
            try:
                expires_at = datetime.fromtimestamp(int(exp), tz=timezone.utc)
            except (TypeError, ValueError, OverflowError, OSError) as e:
                raise TransientAuthError(f"Token expiry {exp!r} is not a Unix timestamp") from e
        else:
            expires_at = datetime.now(timezone.utc) + DEFAULT_TOKEN_LIFETIME

        logger.debug(f"Obtained token expiring at {expires_at.isoformat()}")
        return Token(
            value=token_data["token"],
            expires_at=expires_at,
            refresh_token=token_data.get("refreshToken"),
        )

    def consumption_url(self, meter: Meter) -> str:
        point = "electricity-meter-points" if meter.kind == ELECTRICITY else "gas-meter-points"
        return f"{self.base_url}/v1/{point}/{meter.mpxn}/meters/{meter.serial}/consumption/"

    def query_page(self, token: Token, meter: Meter, period_from: datetime, cursor: Optional[str] = None) -> Page:
        """Fetch and decode one consumption page.

        Args:
            token: Valid access token
            meter: Meter to query
            period_from: Only readings from this instant onwards
            cursor: Continuation marker from the previous page, None for the first

        Returns:
            The decoded page
        """
        if meter.source == "graphql":
            return self._query_measurements_page(token, meter, period_from, cursor)

        if cursor:
            # REST cursors are complete URLs carrying the original filters
            payload = self._send("GET", cursor, token)
        else:
            payload = self._send("GET", self.consumption_url(meter), token, params={
                "period_from": period_from.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
                "page_size": self.page_size,
                "order_by": "period",
            })
        return decode_page(payload, meter)

    def _query_measurements_page(
        self, token: Token, meter: Meter, period_from: datetime, cursor: Optional[str]
    ) -> Page:
        if not meter.account_number:
            raise FetchError(f"Meter {meter.meter_id} needs an account number for GraphQL measurements")

        supply_filter = {"readingFrequencyType": "HALF_HOURLY", "marketSupplyPointId": meter.mpxn}
        utility_filters = [
            {"electricityFilters": supply_filter} if meter.kind == ELECTRICITY else {"gasFilters": supply_filter}
        ]
        payload = self._graphql(MEASUREMENTS_QUERY, {
            "accountNumber": meter.account_number,
            "first": self.page_size,
            "after": cursor,
            "startAt": period_from.astimezone(timezone.utc).isoformat(),
            "utilityFilters": utility_filters,
            "withAgreements": cursor is None,
        }, token)
        return decode_page(payload, meter)

    def rates_url(self, meter: Meter, listing: str) -> str:
        tariffs = "electricity-tariffs" if meter.kind == ELECTRICITY else "gas-tariffs"
        return f"{self.base_url}/v1/products/{meter.product_code}/{tariffs}/{meter.tariff_code}/{listing}/"

    def query_rates_page(
        self,
        token: Token,
        meter: Meter,
        listing: str,
        period_from: datetime,
        cursor: Optional[str] = None,
    ) -> RatesPage:
        """Fetch one page of ``standard-unit-rates`` or ``standing-charges``."""
        if cursor:
            payload = self._send("GET", cursor, token)
        else:
            payload = self._send("GET", self.rates_url(meter, listing), token, params={
                "period_from": period_from.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
                "page_size": self.page_size,
            })
        return decode_rates_page(payload)

    def get_account(self, token: Token, account_number: str) -> dict:
        """Fetch the account with its properties, meter points and agreements."""
        payload = self._send("GET", f"{self.base_url}/v1/accounts/{account_number}/", token)
        if not isinstance(payload, dict) or not isinstance(payload.get("properties"), list):
            raise MalformedPageError(f"Account {account_number} response has no properties")
        return payload
