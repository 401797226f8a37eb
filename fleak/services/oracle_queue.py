# fleak/services/oracle_queue.py
import logging
import queue
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeout
from typing import Dict, Optional, Tuple

from eth_account import Account
from flask import current_app
from web3 import Web3

from fleak.errors import UpstreamUnavailable, InvalidOperation
from fleak.services.ledger_service import normalize_address

logger = logging.getLogger(__name__)

_STOP = object()


class _PendingTx:
    __slots__ = ("to", "calldata", "value", "future")

    def __init__(self, to, calldata, value, future):
        self.to = to
        self.calldata = calldata
        self.value = value
        self.future = future


class OracleTransactionQueue:
    """
    Single-writer submission queue for one oracle signing key.

    Every transaction signed with the key goes through one worker thread,
    which owns the nonce: it is fetched from the chain once, incremented
    locally after each accepted send, and re-fetched after a failed send.
    Callers get a Future resolving to the transaction hash.
    """

    def __init__(self, web3, private_key, chain_id, gas_limit=200000, tx_timeout=60.0):
        self._w3 = web3
        self._account = Account.from_key(private_key)
        self._chain_id = int(chain_id)
        self._gas_limit = int(gas_limit)
        self._tx_timeout = tx_timeout
        self._queue: "queue.Queue" = queue.Queue()
        self._nonce: Optional[int] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def address(self) -> str:
        return self._account.address

    def start(self):
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name=f"oracle-tx-{self.address[:10]}", daemon=True)
            self._thread.start()

    def stop(self, timeout=5.0):
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)

    def submit(self, to, calldata, value=0) -> Future:
        future: Future = Future()
        self._queue.put(_PendingTx(normalize_address(to, "contractAddress"), calldata, int(value or 0), future))
        self.start()
        return future

    def submit_and_wait(self, to, calldata, value=0, timeout=None) -> str:
        future = self.submit(to, calldata, value)
        try:
            return future.result(timeout=timeout if timeout is not None else self._tx_timeout)
        except FutureTimeout as exc:
            # the worker still owns the slot; cancelling only drops it if not yet running
            future.cancel()
            raise UpstreamUnavailable("Oracle transaction submission timed out") from exc

    def _run(self):
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            if not item.future.set_running_or_notify_cancel():
                continue
            try:
                tx_hash = self._send(item)
            except Exception as exc:
                self._nonce = None
                logger.warning("Oracle tx to %s failed, nonce will be resynced: %s", item.to, exc)
                item.future.set_exception(UpstreamUnavailable("Oracle transaction submission failed", details={"reason": str(exc)}))
            else:
                logger.info("Oracle tx sent: %s", tx_hash)
                item.future.set_result(tx_hash)

    def _send(self, item):
        if self._nonce is None:
            self._nonce = self._w3.eth.get_transaction_count(self.address, "pending")
            logger.info("Oracle nonce synced for %s: %s", self.address, self._nonce)

        tx = {
            "to": item.to,
            "data": item.calldata,
            "value": item.value,
            "gas": self._gas_limit,
            "gasPrice": self._w3.eth.gas_price,
            "nonce": self._nonce,
            "chainId": self._chain_id,
        }
        signed = self._account.sign_transaction(tx)
        tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        self._nonce += 1
        return Web3.to_hex(tx_hash)


# One queue per (rpc url, oracle address) for the whole process
_queues: Dict[Tuple[str, str], OracleTransactionQueue] = {}
_queues_lock = threading.Lock()


def get_oracle_queue() -> OracleTransactionQueue:
    private_key = current_app.config.get("ORACLE_PRIVATE_KEY")
    if not private_key:
        raise InvalidOperation("Oracle signing key is not configured")

    rpc_url = current_app.config["CHAIN_RPC_URL"]
    address = Account.from_key(private_key).address
    key = (rpc_url, address)

    with _queues_lock:
        oracle_queue = _queues.get(key)
        if oracle_queue is None:
            timeout = current_app.config.get("EXTERNAL_TIMEOUT_SECONDS", 15.0)
            w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
            oracle_queue = OracleTransactionQueue(
                w3,
                private_key,
                chain_id=current_app.config["CONTRACT_CHAIN_ID"],
                gas_limit=current_app.config.get("ORACLE_GAS_LIMIT", 200000),
                tx_timeout=current_app.config.get("ORACLE_TX_TIMEOUT_SECONDS", 60.0),
            )
            _queues[key] = oracle_queue
            current_app.logger.info(f"Oracle queue created for {address} via {rpc_url}")
        return oracle_queue
