"""
Tally HTTP transport.

One POST per call, bounded timeout, no retry loop. Retries happen one level
up (the next scheduled or manual run) so that cursor semantics stay simple.
"""
from __future__ import annotations
import requests
from loguru import logger
from typing import Optional
from .config import TallySyncConfig
from .errors import TransportError, TransportErrorKind

DEFAULT_HEADERS = {
    "Content-Type": "text/xml; charset=utf-8",
    "Accept": "text/xml",
    "User-Agent": "tally-sync/1.0",
}


class TallyClient:
    """
    HTTP client for the Tally XML interface.

    Features:
    - Connection pooling via requests.Session
    - Configurable timeout (default 20s)
    - Failures mapped to TransportError kinds
    """

    def __init__(self, config: Optional[TallySyncConfig] = None):
        self.config = config or TallySyncConfig.from_env()
        self.base_url = self.config.tally_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)

    def send(self, request_body: str, timeout: Optional[int] = None) -> str:
        """
        Post an XML request to Tally and return the response body.

        Args:
            request_body: Rendered XML request
            timeout: Request timeout in seconds (uses config default if not specified)

        Returns:
            XML response string

        Raises:
            TransportError: On timeout, refused connection or non-200 status
        """
        timeout = timeout or self.config.request_timeout
        try:
            r = self.session.post(
                self.base_url, data=request_body.encode("utf-8"), timeout=timeout
            )
        except requests.Timeout as e:
            logger.error(f"Tally request timed out after {timeout}s")
            raise TransportError(TransportErrorKind.TIMEOUT, f"no response within {timeout}s") from e
        except requests.ConnectionError as e:
            logger.error(f"Failed to connect to Tally at {self.base_url}: {e}")
            raise TransportError(
                TransportErrorKind.CONNECTION_REFUSED, f"cannot connect to {self.base_url}"
            ) from e
        except requests.RequestException as e:
            logger.error(f"Tally request failed: {e}")
            raise TransportError(TransportErrorKind.CONNECTION_REFUSED, str(e)) from e

        if r.status_code != 200:
            logger.error(f"Tally answered HTTP {r.status_code}")
            raise TransportError(
                TransportErrorKind.NON_OK_STATUS,
                f"HTTP {r.status_code} from {self.base_url}",
                status_code=r.status_code,
            )

        # Tally omits the charset; its output is UTF-8
        if not r.encoding or r.encoding.lower() == "iso-8859-1":
            r.encoding = "utf-8"
        return r.text

    def test_connection(self) -> dict:
        """
        Test connection to Tally and return server info.

        Returns:
            Dict with connection status
        """
        # A Group collection exists in every company
        company = self.config.tally_company
        company_var = f"<SVCURRENTCOMPANY>{company}</SVCURRENTCOMPANY>" if company else ""
        test_xml = f"""<ENVELOPE>
            <HEADER>
                <VERSION>1</VERSION>
                <TALLYREQUEST>Export</TALLYREQUEST>
                <TYPE>Collection</TYPE>
                <ID>ListOfGroups</ID>
            </HEADER>
            <BODY>
                <DESC>
                    <STATICVARIABLES>
                        <SVEXPORTFORMAT>$$SysName:XML</SVEXPORTFORMAT>
                        {company_var}
                    </STATICVARIABLES>
                    <TDL>
                        <TDLMESSAGE>
                            <COLLECTION NAME="ListOfGroups" ISMODIFY="No">
                                <TYPE>Group</TYPE>
                                <FETCH>NAME</FETCH>
                            </COLLECTION>
                        </TDLMESSAGE>
                    </TDL>
                </DESC>
            </BODY>
        </ENVELOPE>"""

        try:
            response = self.send(test_xml, timeout=30)
        except TransportError as e:
            return {
                "status": "failed",
                "url": self.base_url,
                "error": str(e),
                "kind": e.kind.value,
            }

        if "<ENVELOPE" in response:
            return {
                "status": "connected",
                "url": self.base_url,
                "response_length": len(response),
                "groups_found": response.count("<GROUP "),
            }
        return {
            "status": "connected_unknown",
            "url": self.base_url,
            "message": "Connected but unexpected response format",
        }

    def close(self):
        """Close the session."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
