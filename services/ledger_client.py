"""
Ledger Client
Abstract account-ledger interface used by the core, plus the Solana JSON-RPC
implementation. Transactions are built and signed locally with solders; only
signed bytes leave the process.
"""

import asyncio
import base64
import itertools
import logging
import struct
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from config import Config
from services.api_adapter_retry import APIAdapterRetry
from utils.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

# SPL token instruction tags
TRANSFER_CHECKED_TAG = 12
CREATE_ATA_IDEMPOTENT_TAG = 1

CONFIRMED_LEVELS = {"confirmed", "finalized"}


class LedgerClient(ABC):
    """Operations the settlement core needs from the account ledger"""

    @abstractmethod
    async def get_native_balance(self, owner: str) -> int:
        """Native balance in base units"""

    @abstractmethod
    async def get_token_balance(self, owner: str, mint: str) -> Optional[int]:
        """Token balance in base units, or None when the owner has no account for the mint"""

    @abstractmethod
    async def token_account_exists(self, owner: str, mint: str) -> bool:
        """Whether the owner's per-asset account exists"""

    @abstractmethod
    async def transfer_native(self, signer: Keypair, destination: str, amount: int) -> str:
        """Sign, submit and confirm a native transfer; returns the signature"""

    @abstractmethod
    async def transfer_token(
        self,
        signer: Keypair,
        destination: str,
        mint: str,
        amount: int,
        decimals: int,
        create_destination_account: bool = False,
    ) -> str:
        """Sign, submit and confirm a token transfer; returns the signature"""

    @abstractmethod
    async def is_confirmed(self, signature: str) -> bool:
        """True once the signature reached confirmed commitment without error"""


def derive_token_account(owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    """Associated token account address for (owner, mint)"""
    address, _bump = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def create_token_account_idempotent_ix(
    payer: Pubkey, owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM_ID
) -> Instruction:
    account = derive_token_account(owner, mint, token_program)
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        bytes([CREATE_ATA_IDEMPOTENT_TAG]),
        [
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(account, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=False, is_writable=False),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(token_program, is_signer=False, is_writable=False),
        ],
    )


def transfer_checked_ix(
    source: Pubkey,
    mint: Pubkey,
    destination: Pubkey,
    owner: Pubkey,
    amount: int,
    decimals: int,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    data = struct.pack("<BQB", TRANSFER_CHECKED_TAG, amount, decimals)
    return Instruction(
        token_program,
        data,
        [
            AccountMeta(source, is_signer=False, is_writable=True),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(destination, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=True, is_writable=False),
        ],
    )


class SolanaLedgerClient(APIAdapterRetry, LedgerClient):
    """JSON-RPC ledger client for Solana"""

    def __init__(
        self,
        config: Config,
        session: Optional[aiohttp.ClientSession] = None,
        confirm_timeout: float = 60.0,
        confirm_interval: float = 2.0,
    ):
        APIAdapterRetry.__init__(self, "solana_rpc", timeout=config.HTTP_TIMEOUT_SECONDS, session=session)
        self.rpc_url = config.SOLANA_RPC_URL
        self.confirm_timeout = confirm_timeout
        self.confirm_interval = confirm_interval
        self._ids = itertools.count(1)
        self._token_programs: Dict[str, Pubkey] = {}

    async def _rpc(self, method: str, params: List[Any], retry: bool = True) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        payload = await self._make_http_request("POST", self.rpc_url, json=body, retry=retry)
        if not isinstance(payload, dict):
            raise ExternalServiceError(f"RPC {method} returned a non-object response", service=self.service_name)
        if payload.get("error"):
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ExternalServiceError(f"RPC {method} failed: {message}", service=self.service_name)
        return payload.get("result")

    async def _get_account_info(self, address: str) -> Optional[Dict[str, Any]]:
        result = await self._rpc("getAccountInfo", [address, {"encoding": "base64", "commitment": "confirmed"}])
        return (result or {}).get("value")

    async def _token_program_for(self, mint: str) -> Pubkey:
        """Token or Token-2022, decided by the mint account's owner program"""
        if mint in self._token_programs:
            return self._token_programs[mint]
        info = await self._get_account_info(mint)
        if info is None:
            raise ExternalServiceError(f"Mint account {mint} not found", service=self.service_name)
        owner = info.get("owner")
        program = TOKEN_2022_PROGRAM_ID if owner == str(TOKEN_2022_PROGRAM_ID) else TOKEN_PROGRAM_ID
        self._token_programs[mint] = program
        return program

    async def _token_account_for(self, owner: str, mint: str) -> Pubkey:
        program = await self._token_program_for(mint)
        return derive_token_account(Pubkey.from_string(owner), Pubkey.from_string(mint), program)

    async def get_native_balance(self, owner: str) -> int:
        result = await self._rpc("getBalance", [owner, {"commitment": "confirmed"}])
        value = (result or {}).get("value")
        if not isinstance(value, int):
            raise ExternalServiceError(f"Invalid balance response for {owner}", service=self.service_name)
        return value

    async def token_account_exists(self, owner: str, mint: str) -> bool:
        account = await self._token_account_for(owner, mint)
        return await self._get_account_info(str(account)) is not None

    async def get_token_balance(self, owner: str, mint: str) -> Optional[int]:
        account = await self._token_account_for(owner, mint)
        if await self._get_account_info(str(account)) is None:
            return None
        result = await self._rpc("getTokenAccountBalance", [str(account), {"commitment": "confirmed"}])
        amount = ((result or {}).get("value") or {}).get("amount")
        try:
            return int(amount)
        except (TypeError, ValueError):
            raise ExternalServiceError(f"Invalid token balance for {account}", service=self.service_name)

    async def _latest_blockhash(self) -> Hash:
        result = await self._rpc("getLatestBlockhash", [{"commitment": "confirmed"}])
        blockhash = ((result or {}).get("value") or {}).get("blockhash")
        if not blockhash:
            raise ExternalServiceError("RPC returned no blockhash", service=self.service_name)
        return Hash.from_string(blockhash)

    async def _sign_and_submit(self, signer: Keypair, instructions: List[Instruction]) -> str:
        blockhash = await self._latest_blockhash()
        message = Message(instructions, signer.pubkey())
        tx = Transaction([signer], message, blockhash)
        encoded = base64.b64encode(bytes(tx)).decode("ascii")
        signature = str(tx.signatures[0])

        # Submission is not idempotent at the HTTP layer; a lost response is resolved by confirmation polling
        await self._rpc(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": "confirmed"}],
            retry=False,
        )
        logger.info(f"📤 LEDGER_TX_SUBMITTED: {signature}")
        await self._await_confirmation(signature)
        return signature

    async def _signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        result = await self._rpc("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        values = (result or {}).get("value") or [None]
        return values[0]

    async def _await_confirmation(self, signature: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirm_timeout
        while True:
            status = await self._signature_status(signature)
            if status:
                if status.get("err"):
                    raise ExternalServiceError(
                        f"Transaction {signature} failed: {status['err']}", service=self.service_name
                    )
                if status.get("confirmationStatus") in CONFIRMED_LEVELS:
                    logger.info(f"✅ LEDGER_TX_CONFIRMED: {signature}")
                    return
            if loop.time() >= deadline:
                raise ExternalServiceError(
                    f"Transaction {signature} not confirmed within {self.confirm_timeout}s",
                    service=self.service_name,
                )
            await asyncio.sleep(self.confirm_interval)

    async def is_confirmed(self, signature: str) -> bool:
        status = await self._signature_status(signature)
        return bool(status) and not status.get("err") and status.get("confirmationStatus") in CONFIRMED_LEVELS

    async def transfer_native(self, signer: Keypair, destination: str, amount: int) -> str:
        ix = transfer(
            TransferParams(from_pubkey=signer.pubkey(), to_pubkey=Pubkey.from_string(destination), lamports=amount)
        )
        return await self._sign_and_submit(signer, [ix])

    async def transfer_token(
        self,
        signer: Keypair,
        destination: str,
        mint: str,
        amount: int,
        decimals: int,
        create_destination_account: bool = False,
    ) -> str:
        program = await self._token_program_for(mint)
        mint_key = Pubkey.from_string(mint)
        destination_owner = Pubkey.from_string(destination)
        source = derive_token_account(signer.pubkey(), mint_key, program)
        target = derive_token_account(destination_owner, mint_key, program)

        instructions = []
        if create_destination_account:
            instructions.append(
                create_token_account_idempotent_ix(signer.pubkey(), destination_owner, mint_key, program)
            )
        instructions.append(
            transfer_checked_ix(source, mint_key, target, signer.pubkey(), amount, decimals, program)
        )
        return await self._sign_and_submit(signer, instructions)
