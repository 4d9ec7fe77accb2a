"""
Multi-RPC Connection Manager for Solana
HTTP JSON-RPC with priority failover and dedicated WebSocket subscriptions
"""

import asyncio
import itertools
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp
import websockets

from sandwich_bot.core.config import RPCConfig, RPCEndpoint
from sandwich_bot.core.errors import RPCError, TransientNetworkError
from sandwich_bot.core.logger import get_logger
from sandwich_bot.core.metrics import get_metrics


logger = get_logger(__name__)
metrics = get_metrics()


@dataclass
class EndpointState:
    """Runtime health of a single RPC endpoint"""
    endpoint: RPCEndpoint
    consecutive_failures: int = 0
    total_requests: int = 0
    total_errors: int = 0


class RPCSubscription:
    """
    A live JSON-RPC subscription on its own WebSocket connection

    Iterating yields the `result` payload of each notification. Iteration
    ends when the socket closes; callers decide whether to reconnect.
    """

    def __init__(self, websocket: Any, subscription_id: int, method: str, endpoint_label: str):
        self.websocket = websocket
        self.subscription_id = subscription_id
        self.method = method
        self.endpoint_label = endpoint_label
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        try:
            while not self._closed:
                message = await self.websocket.recv()
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning(
                        "subscription_message_not_json",
                        subscription_id=self.subscription_id,
                        endpoint=self.endpoint_label
                    )
                    continue

                params = data.get("params") if isinstance(data, dict) else None
                if isinstance(params, dict) and params.get("subscription") == self.subscription_id:
                    yield params.get("result")

        except websockets.exceptions.ConnectionClosed as e:
            if not self._closed:
                logger.warning(
                    "subscription_connection_closed",
                    subscription_id=self.subscription_id,
                    endpoint=self.endpoint_label,
                    error=str(e)
                )

    async def close(self) -> None:
        """Close the underlying socket"""
        if self._closed:
            return
        self._closed = True
        try:
            await self.websocket.close()
        except Exception as e:
            logger.warning(
                "subscription_close_error",
                subscription_id=self.subscription_id,
                error=str(e)
            )


class RPCManager:
    """
    Manages RPC endpoints with automatic failover

    Features:
    - HTTP JSON-RPC calls tried in endpoint priority order
    - Transport failures fail over to the next endpoint
    - JSON-RPC error responses are returned to the caller as RPCError
    - One dedicated WebSocket per subscription

    Usage:
        rpc_manager = RPCManager(bot_config.rpc_config)
        await rpc_manager.start()
        response = await rpc_manager.call_http_rpc("getSlot", [])
    """

    def __init__(self, config: RPCConfig):
        """
        Initialize RPC manager

        Args:
            config: RPC configuration
        """
        self.config = config
        self.endpoints: Dict[str, EndpointState] = {
            endpoint.label: EndpointState(endpoint=endpoint)
            for endpoint in config.endpoints
        }
        self._http_session: Optional[aiohttp.ClientSession] = None
        self._request_ids = itertools.count(1)

        logger.info(
            "rpc_manager_initialized",
            endpoint_count=len(self.endpoints),
            endpoints=[ep.label for ep in config.endpoints]
        )

    async def start(self) -> None:
        """Open the shared HTTP session"""
        if self._http_session is not None:
            logger.warning("rpc_manager_already_running")
            return

        # No default timeout, set per request
        self._http_session = aiohttp.ClientSession()
        logger.info("rpc_manager_started")

    async def stop(self) -> None:
        """Close the shared HTTP session"""
        if self._http_session is None:
            return

        await self._http_session.close()
        self._http_session = None
        logger.info("rpc_manager_stopped")

    def _ordered_endpoints(self) -> List[EndpointState]:
        """Healthy endpoints first, then by configured priority"""
        threshold = self.config.failover_threshold_errors
        return sorted(
            self.endpoints.values(),
            key=lambda s: (s.consecutive_failures >= threshold, s.endpoint.priority)
        )

    async def call_http_rpc(
        self,
        method: str,
        params: List[Any],
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Make an HTTP RPC call with automatic failover

        Args:
            method: JSON-RPC method name
            params: Method parameters
            timeout: Request timeout in seconds (defaults to endpoint timeout_ms)

        Returns:
            Full JSON-RPC response dict (contains "result")

        Raises:
            RPCError: If a node answered with a JSON-RPC error
            TransientNetworkError: If every endpoint failed at the transport level
        """
        if self._http_session is None:
            raise RuntimeError("HTTP session not initialized. Call start() first.")

        last_error: Optional[Exception] = None

        for state in self._ordered_endpoints():
            endpoint = state.endpoint
            request_timeout = timeout if timeout is not None else endpoint.timeout_ms / 1000
            payload = {
                "jsonrpc": "2.0",
                "id": next(self._request_ids),
                "method": method,
                "params": params
            }
            state.total_requests += 1

            try:
                async with self._http_session.post(
                    endpoint.url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=request_timeout)
                ) as response:
                    result = await response.json(content_type=None)

            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                state.consecutive_failures += 1
                state.total_errors += 1
                metrics.increment_counter("http_rpc_errors", labels={"endpoint": endpoint.label})
                logger.warning(
                    "http_rpc_call_failed",
                    endpoint=endpoint.label,
                    method=method,
                    error=str(e) or type(e).__name__,
                    consecutive_failures=state.consecutive_failures
                )
                last_error = e
                continue

            state.consecutive_failures = 0

            if not isinstance(result, dict):
                raise RPCError(f"Unexpected RPC response: {result!r}", method=method)

            if "error" in result:
                error = result["error"] or {}
                message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                code = error.get("code") if isinstance(error, dict) else None
                metrics.increment_counter("http_rpc_error_responses", labels={"method": method})
                raise RPCError(message, code=code, method=method)

            metrics.increment_counter("http_rpc_success", labels={"endpoint": endpoint.label})
            return result

        raise TransientNetworkError(
            f"All HTTP RPC endpoints failed for {method}. Last error: {last_error}",
            method=method
        )

    async def open_subscription(
        self,
        method: str,
        params: List[Any],
        timeout: float = 10.0
    ) -> RPCSubscription:
        """
        Open a subscription on the first endpoint that accepts it

        Args:
            method: Subscription method (e.g., "logsSubscribe")
            params: Subscription parameters
            timeout: Seconds to wait for the subscription confirmation

        Returns:
            RPCSubscription ready to iterate

        Raises:
            TransientNetworkError: If no endpoint accepted the subscription
        """
        last_error: Optional[Exception] = None

        for state in self._ordered_endpoints():
            endpoint = state.endpoint
            websocket = None
            try:
                logger.info("connecting_to_endpoint", endpoint=endpoint.label, url=endpoint.websocket_url)
                websocket = await websockets.connect(
                    endpoint.websocket_url,
                    ping_interval=20,
                    ping_timeout=10,
                    close_timeout=5,
                    open_timeout=timeout,
                    max_size=None
                )

                request_id = next(self._request_ids)
                await websocket.send(json.dumps({
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "method": method,
                    "params": params
                }))

                response = json.loads(await asyncio.wait_for(websocket.recv(), timeout=timeout))
                if "error" in response:
                    raise RPCError(f"Subscription failed: {response['error']}", method=method)

                subscription_id = response.get("result")
                if subscription_id is None:
                    raise RPCError(f"Subscription returned no id: {response}", method=method)

                metrics.increment_counter("subscriptions_opened", labels={"endpoint": endpoint.label})
                logger.info(
                    "subscription_created",
                    method=method,
                    subscription_id=subscription_id,
                    endpoint=endpoint.label
                )
                return RPCSubscription(websocket, subscription_id, method, endpoint.label)

            except Exception as e:
                state.consecutive_failures += 1
                state.total_errors += 1
                logger.error(
                    "subscription_open_failed",
                    endpoint=endpoint.label,
                    method=method,
                    error=str(e) or type(e).__name__
                )
                last_error = e
                if websocket is not None:
                    try:
                        await websocket.close()
                    except Exception as close_error:
                        logger.debug("websocket_close_error", error=str(close_error))

        raise TransientNetworkError(
            f"Could not open {method} on any endpoint. Last error: {last_error}",
            method=method
        )

    def get_health_stats(self) -> Dict[str, Dict[str, Any]]:
        """
        Get health statistics for all endpoints

        Returns:
            Dictionary of endpoint label -> stats
        """
        threshold = self.config.failover_threshold_errors
        return {
            label: {
                "url": state.endpoint.url,
                "is_healthy": state.consecutive_failures < threshold,
                "consecutive_failures": state.consecutive_failures,
                "total_requests": state.total_requests,
                "total_errors": state.total_errors
            }
            for label, state in self.endpoints.items()
        }
