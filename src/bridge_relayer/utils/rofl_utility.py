import codecs
import json
import logging
import typing
from typing import Any, Dict

import cbor2
import httpx
from web3.types import TxParams

from ..errors import DestinationRejectedError

logger = logging.getLogger(__name__)


class RoflUtility:
    """
    Client for the ROFL appd running next to the relayer inside the enclave.

    Provides key custody (the relayer key never leaves the appd derivation
    scheme) and authenticated sign-and-submit of destination transactions.
    """

    ROFL_SOCKET_PATH = "/run/rofl-appd.sock"

    def __init__(self, url: str = '', timeout: float = 60.0):
        self.url = url
        self.timeout = timeout

    async def _appd_post(self, path: str, payload: typing.Any) -> typing.Any:
        transport = None
        if self.url and not self.url.startswith('http'):
            transport = httpx.AsyncHTTPTransport(uds=self.url)
            logger.debug(f"Using HTTP socket: {self.url}")
        elif not self.url:
            transport = httpx.AsyncHTTPTransport(uds=self.ROFL_SOCKET_PATH)
            logger.debug(f"Using unix domain socket: {self.ROFL_SOCKET_PATH}")

        async with httpx.AsyncClient(transport=transport) as client:
            url = self.url if self.url and self.url.startswith('http') else "http://localhost"
            logger.debug(f"Posting to {url+path}: {json.dumps(payload)}")
            response = await client.post(url + path, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return response.json()

    async def fetch_key(self, id: str) -> str:
        """Derive (or fetch) the secp256k1 key registered under ``id``."""
        payload = {
            "key_id": id,
            "kind": "secp256k1"
        }

        path = '/rofl/v1/keys/generate'

        response = await self._appd_post(path, payload)
        return response["key"]

    def _decode_cbor_response(self, response_hex: str) -> Dict[str, Any]:
        """
        Decode CBOR response from ROFL service.

        Args:
            response_hex: Hex-encoded CBOR response

        Returns:
            Decoded CBOR data as dictionary
        """
        try:
            data_bytes = codecs.decode(response_hex, "hex")
            cbor_result = cbor2.loads(data_bytes)
            logger.debug(f"Decoded CBOR: {cbor_result}")
            return cbor_result if isinstance(cbor_result, dict) else {"data": cbor_result}
        except (ValueError, cbor2.CBORDecodeError) as decode_error:
            logger.error(f"CBOR decode error: {decode_error}")
            return {"error": "decode_failed", "raw": response_hex}

    async def submit_tx(self, tx: TxParams) -> bool:
        """
        Sign and submit a transaction via ROFL.

        The appd does not return a transaction hash, so callers must confirm
        inclusion from destination chain state.

        Args:
            tx: Transaction parameters with gas, to, value and data

        Returns:
            True if the appd accepted the transaction

        Raises:
            DestinationRejectedError: If ROFL reports a failed transaction
        """
        payload = {
            "tx": {
                "kind": "eth",
                "data": {
                    "gas_limit": tx["gas"],
                    "to": tx["to"].removeprefix("0x"),
                    "value": tx["value"],
                    "data": tx["data"].removeprefix("0x"),
                },
            },
            "encrypt": False,
        }

        path = '/rofl/v1/tx/sign-submit'

        response = await self._appd_post(path, payload)
        response_hex = response["data"]
        logger.debug(f"ROFL raw response: {response_hex}")

        decoded_response = self._decode_cbor_response(response_hex)

        if 'ok' in decoded_response:
            logger.info("Transaction submitted successfully to ROFL")
            return True
        elif decoded_response.get('error') == 'decode_failed':
            # Undecodable answer: the tx may or may not have gone out
            logger.warning("Unreadable ROFL response, outcome must be confirmed on-chain")
            return True
        elif 'error' in decoded_response:
            error_msg = decoded_response.get('error')
            logger.error(f"ROFL transaction failed: {error_msg}")
            raise DestinationRejectedError(f"ROFL transaction failed: {error_msg}")
        else:
            logger.warning(f"Unknown ROFL response format: {decoded_response}")
            return True
