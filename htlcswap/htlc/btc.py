"""
Bitcoin HTLC adapter for htlcswap.

Creates P2WSH HTLCs compatible with BIP-199 (pubkey-hash form, so both
parties are identified by ordinary P2WPKH/P2PKH addresses):

    OP_IF
        OP_SHA256 <hashlock> OP_EQUALVERIFY
        OP_DUP OP_HASH160 <recipient_pkh>
    OP_ELSE
        <timelock> OP_CHECKLOCKTIMEVERIFY OP_DROP
        OP_DUP OP_HASH160 <refund_pkh>
    OP_ENDIF
    OP_EQUALVERIFY OP_CHECKSIG

To redeem (with secret):
    <signature> <pubkey> <secret> OP_TRUE <script>

To refund (after timeout, nLockTime >= timelock):
    <signature> <pubkey> OP_FALSE <script>

The timelock is a unix timestamp compared against median time past.
"""

import hashlib
import struct
import logging
import threading
from typing import Optional, Dict, List, Tuple

import base58
import bech32
from bitcoin import SelectParams
from bitcoin.core import (
    CMutableTransaction, CMutableTxIn, CMutableTxOut, COutPoint,
    CTxInWitness, CTxWitness, lx, b2x, Hash160,
)
from bitcoin.core.script import (
    CScript, CScriptWitness, SignatureHash, SIGHASH_ALL, SIGVERSION_WITNESS_V0,
    OP_0 as S_OP_0, OP_DUP as S_OP_DUP, OP_HASH160 as S_OP_HASH160,
    OP_EQUALVERIFY as S_OP_EQUALVERIFY, OP_CHECKSIG as S_OP_CHECKSIG,
)
from bitcoin.wallet import CBitcoinSecret, CBitcoinAddress

from ..core import HTLCParams, ContractRef, HTLCStatus, TxInfo, Chain
from ..chains.btc import BTCClient
from ..errors import AdapterError, MissingKeyError, ValidationError
from .base import ChainAdapter, secret_matches

log = logging.getLogger(__name__)


# Bitcoin Script opcodes
OP_0 = 0x00
OP_FALSE = 0x00
OP_TRUE = 0x51
OP_IF = 0x63
OP_ELSE = 0x67
OP_ENDIF = 0x68
OP_DROP = 0x75
OP_DUP = 0x76
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xac
OP_CHECKLOCKTIMEVERIFY = 0xb1
OP_SHA256 = 0xa8
OP_HASH160 = 0xa9

SEQUENCE_LOCKTIME_ENABLED = 0xfffffffe
DUST_LIMIT = 546

# Virtual sizes used for fee estimation
REDEEM_VSIZE = 160
REFUND_VSIZE = 150
P2WPKH_INPUT_VSIZE = 68
OUTPUT_VSIZE = 43
TX_OVERHEAD_VSIZE = 11

NETWORK_HRP = {
    "mainnet": "bc",
    "testnet": "tb",
    "signet": "tb",
    "regtest": "bcrt",
}

# (P2PKH, P2SH) base58 version bytes
NETWORK_B58_VERSIONS = {
    "mainnet": (0x00, 0x05),
    "testnet": (0x6f, 0xc4),
    "signet": (0x6f, 0xc4),
    "regtest": (0x6f, 0xc4),
}


def push_data(data: bytes) -> bytes:
    """Create push data opcode for Bitcoin script."""
    length = len(data)
    if length < 0x4c:
        return bytes([length]) + data
    elif length <= 0xff:
        return bytes([0x4c, length]) + data
    elif length <= 0xffff:
        return bytes([0x4d]) + struct.pack('<H', length) + data
    else:
        return bytes([0x4e]) + struct.pack('<I', length) + data


def push_int(n: int) -> bytes:
    """Push a non-negative script number (for timelock)."""
    if n == 0:
        return bytes([OP_0])
    elif 1 <= n <= 16:
        return bytes([0x50 + n])  # OP_1 through OP_16
    result = []
    while n:
        result.append(n & 0xff)
        n >>= 8
    # Sign bit must stay clear
    if result[-1] & 0x80:
        result.append(0x00)
    return push_data(bytes(result))


def sha256(data: bytes) -> bytes:
    """SHA256 hash."""
    return hashlib.sha256(data).digest()


def create_htlc_script(hashlock: str, recipient_pkh: bytes, refund_pkh: bytes,
                       timelock: int) -> bytes:
    """
    Create HTLC witness script.

    Args:
        hashlock: SHA256 hash (hex)
        recipient_pkh: HASH160 of the redeem-path pubkey
        refund_pkh: HASH160 of the refund-path pubkey
        timelock: Unix timestamp

    Returns:
        Witness script bytes
    """
    script = bytes([OP_IF])
    script += bytes([OP_SHA256])
    script += push_data(bytes.fromhex(hashlock))
    script += bytes([OP_EQUALVERIFY])
    script += bytes([OP_DUP, OP_HASH160])
    script += push_data(recipient_pkh)
    script += bytes([OP_ELSE])
    script += push_int(timelock)
    script += bytes([OP_CHECKLOCKTIMEVERIFY, OP_DROP])
    script += bytes([OP_DUP, OP_HASH160])
    script += push_data(refund_pkh)
    script += bytes([OP_ENDIF])
    script += bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    return script


class BTCAdapter(ChainAdapter):
    """
    Bitcoin HTLC adapter over an Esplora API.

    The coordinator key (WIF) is used for funding from its P2WPKH wallet and
    for the redeem/refund paths whose pkh matches it.
    """

    chain = Chain.BITCOIN.value
    tokens = frozenset({"BTC"})

    def __init__(self, client: BTCClient):
        super().__init__(client.config.required_confirmations)
        self.client = client
        self.network = client.config.network
        self.hrp = NETWORK_HRP.get(self.network, "tb")
        self._send_lock = threading.Lock()
        SelectParams(self.network)

    # =========================================================================
    # Addresses
    # =========================================================================

    def address_to_pkh(self, address: str) -> Optional[bytes]:
        """HASH160 behind a P2WPKH or P2PKH address, or None."""
        witver, witprog = bech32.decode(self.hrp, address)
        if witver is not None:
            prog = bytes(witprog)
            return prog if witver == 0 and len(prog) == 20 else None
        try:
            raw = base58.b58decode_check(address)
        except ValueError:
            return None
        p2pkh_version = NETWORK_B58_VERSIONS.get(self.network, (0x6f, 0xc4))[0]
        if len(raw) == 21 and raw[0] == p2pkh_version:
            return raw[1:]
        return None

    def validate_address(self, address: str) -> bool:
        if not address:
            return False
        witver, witprog = bech32.decode(self.hrp, address)
        if witver is not None:
            return witver == 0 and len(witprog) in (20, 32)
        try:
            raw = base58.b58decode_check(address)
        except ValueError:
            return False
        return len(raw) == 21 and raw[0] in NETWORK_B58_VERSIONS.get(self.network, (0x6f, 0xc4))

    def script_to_p2wsh_address(self, script: bytes) -> str:
        """Witness program = SHA256(script), bech32 v0."""
        return bech32.encode(self.hrp, 0, sha256(script))

    def _key(self) -> CBitcoinSecret:
        if not self.client.config.wif:
            raise MissingKeyError("BTC WIF not configured", chain=self.chain)
        return CBitcoinSecret(self.client.config.wif)

    def wallet_address(self) -> Optional[str]:
        if not self.client.config.wif:
            return None
        return bech32.encode(self.hrp, 0, Hash160(self._key().pub))

    # =========================================================================
    # Capability set
    # =========================================================================

    def create_htlc(self, params: HTLCParams) -> ContractRef:
        hashlock = self._check_params(params)
        recipient_pkh = self.address_to_pkh(params.receiver)
        refund_pkh = self.address_to_pkh(params.sender)
        if recipient_pkh is None or refund_pkh is None:
            raise ValidationError("BTC HTLC parties must use P2WPKH or P2PKH addresses")
        if params.timelock < 500_000_000:
            raise ValidationError(f"BTC timelock must be a unix timestamp, got {params.timelock}")

        script = create_htlc_script(hashlock, recipient_pkh, refund_pkh, params.timelock)
        address = self.script_to_p2wsh_address(script)
        log.info(f"BTC HTLC: {address}, timelock={params.timelock}")
        return ContractRef(
            chain=self.chain,
            address=address,
            hashlock=hashlock,
            timelock=params.timelock,
            amount=params.amount,
            sender=params.sender,
            receiver=params.receiver,
            extra={"witness_script": script.hex()},
        )

    def fund(self, ref: ContractRef, amount: int) -> str:
        """Fund the HTLC address from the coordinator's P2WPKH wallet."""
        key = self._key()
        pkh = Hash160(key.pub)
        wallet_addr = bech32.encode(self.hrp, 0, pkh)

        with self._send_lock:
            utxos = sorted(self.client.get_utxos(wallet_addr), key=lambda u: -u["value"])
            fee_rate = self.client.estimate_fee_rate()
            selected, total = [], 0
            for utxo in utxos:
                selected.append(utxo)
                total += utxo["value"]
                fee = fee_rate * (TX_OVERHEAD_VSIZE + P2WPKH_INPUT_VSIZE * len(selected) + OUTPUT_VSIZE * 2)
                if total >= amount + fee:
                    break
            else:
                raise AdapterError(f"Insufficient BTC: have {total} sats, need {amount} + fee",
                                   chain=self.chain)

            htlc_spk = CScript([S_OP_0, sha256(bytes.fromhex(ref.extra["witness_script"]))])
            vout = [CMutableTxOut(amount, htlc_spk)]
            change = total - amount - fee
            if change > DUST_LIMIT:
                vout.append(CMutableTxOut(change, CScript([S_OP_0, pkh])))
            vin = [CMutableTxIn(COutPoint(lx(u["txid"]), u["vout"])) for u in selected]
            tx = CMutableTransaction(vin, vout, nVersion=2)

            script_code = CScript([S_OP_DUP, S_OP_HASH160, pkh, S_OP_EQUALVERIFY, S_OP_CHECKSIG])
            witnesses = []
            for i, utxo in enumerate(selected):
                sighash = SignatureHash(
                    script=script_code, txTo=tx, inIdx=i, hashtype=SIGHASH_ALL,
                    amount=utxo["value"], sigversion=SIGVERSION_WITNESS_V0,
                )
                sig = key.sign(sighash) + bytes([SIGHASH_ALL])
                witnesses.append(CTxInWitness(CScriptWitness([sig, key.pub])))
            tx.wit = CTxWitness(witnesses)

            txid = self.client.broadcast(b2x(tx.serialize()))
        log.info(f"Funded BTC HTLC {ref.address} with {amount} sats: {txid}")
        return txid

    def _find_funding(self, ref: ContractRef, txs: List[Dict]) -> Optional[Tuple[str, int, int]]:
        # Esplora lists newest first; the oldest qualifying output is the funding
        for tx in reversed(txs):
            for index, out in enumerate(tx.get("vout", [])):
                if out.get("scriptpubkey_address") == ref.address and out.get("value", 0) >= ref.amount:
                    return tx["txid"], index, out["value"]
        return None

    def get_status(self, ref: ContractRef) -> HTLCStatus:
        funding = self._find_funding(ref, self.client.get_address_txs(ref.address))
        if funding is None:
            # A P2WSH HTLC exists on-chain only once an output pays to it
            return HTLCStatus(exists=False)

        txid, vout, value = funding
        status = HTLCStatus(exists=True, funded=True, funding_tx=txid, amount=value)

        spend = self.client.get_outspend(txid, vout)
        if not spend.get("spent"):
            return status

        spend_tx = self.client.get_tx(spend["txid"])
        witness = []
        if spend_tx:
            witness = spend_tx["vin"][spend.get("vin", 0)].get("witness") or []
        if len(witness) == 5 and witness[3] == "01":
            status.redeemed = True
            status.redeem_tx = spend["txid"]
            status.revealed_secret = witness[2]
            if not secret_matches(witness[2], ref.hashlock):
                log.warning(f"BTC HTLC {ref.address}: witness secret does not match hashlock")
        else:
            status.refunded = True
            status.refund_tx = spend["txid"]
        return status

    def get_confirmations(self, tx_hash: str) -> TxInfo:
        tx_status = self.client.get_tx_status(tx_hash)
        if tx_status is None:
            return TxInfo(found=False)
        if not tx_status.get("confirmed"):
            return TxInfo(found=True, confirmations=0)
        tip = self.client.get_tip_height()
        return TxInfo(found=True, confirmations=max(0, tip - tx_status["block_height"] + 1))

    def chain_time(self) -> int:
        return self.client.get_median_time()

    def is_expired(self, chain_now: int, timelock: int) -> bool:
        # A locktime is final only once MTP is strictly greater
        return chain_now > timelock

    # =========================================================================
    # Spends
    # =========================================================================

    def _spend(self, ref: ContractRef, status: HTLCStatus, destination: str,
               expected_pkh_address: str, witness_tail: List[bytes], vsize: int,
               locktime: int = 0) -> str:
        key = self._key()
        expected_pkh = self.address_to_pkh(expected_pkh_address)
        if Hash160(key.pub) != expected_pkh:
            raise MissingKeyError(f"Configured BTC key does not control {expected_pkh_address}",
                                  chain=self.chain)

        script_bytes = bytes.fromhex(ref.extra["witness_script"])
        funding = self._find_funding(ref, self.client.get_address_txs(ref.address))
        if funding is None:
            raise AdapterError(f"Funding output for {ref.address} not found", chain=self.chain)
        txid, vout_index, value = funding

        fee = self.client.estimate_fee_rate() * vsize
        if value - fee <= DUST_LIMIT:
            raise AdapterError(f"HTLC value {value} too small for fee {fee}", chain=self.chain)

        txin = CMutableTxIn(COutPoint(lx(txid), vout_index), nSequence=SEQUENCE_LOCKTIME_ENABLED)
        txout = CMutableTxOut(value - fee, CBitcoinAddress(destination).to_scriptPubKey())
        tx = CMutableTransaction([txin], [txout], nLockTime=locktime, nVersion=2)

        sighash = SignatureHash(
            script=CScript(script_bytes), txTo=tx, inIdx=0, hashtype=SIGHASH_ALL,
            amount=value, sigversion=SIGVERSION_WITNESS_V0,
        )
        sig = key.sign(sighash) + bytes([SIGHASH_ALL])
        stack = [sig, key.pub] + witness_tail + [script_bytes]
        tx.wit = CTxWitness([CTxInWitness(CScriptWitness(stack))])

        with self._send_lock:
            return self.client.broadcast(b2x(tx.serialize()))

    def _redeem(self, ref: ContractRef, secret_hex: str, recipient: str, status: HTLCStatus) -> str:
        return self._spend(
            ref, status,
            destination=recipient or ref.receiver,
            expected_pkh_address=ref.receiver,
            witness_tail=[bytes.fromhex(secret_hex), b'\x01'],
            vsize=REDEEM_VSIZE,
        )

    def _refund(self, ref: ContractRef, sender: str, status: HTLCStatus) -> str:
        return self._spend(
            ref, status,
            destination=sender or ref.sender,
            expected_pkh_address=ref.sender,
            witness_tail=[b''],
            vsize=REFUND_VSIZE,
            locktime=ref.timelock,
        )
