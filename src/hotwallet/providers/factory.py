"""Factory for creating provider clients from endpoint URLs.

``sim://`` URLs resolve to the shared in-memory simulated chains; every
other URL gets the real transport client for the network family.
"""

from typing import Optional

from hotwallet.networks import EndpointOverrides, NetworkConfig, NetworkFamily


def create_provider(
    config: NetworkConfig,
    url: str,
    overrides: Optional[EndpointOverrides] = None,
    timeout: float = 30.0,
):
    """Create a provider bound to one endpoint URL.

    Args:
        config: Network configuration
        url: Endpoint URL
        overrides: Resolved endpoint settings (websocket, explorer)
        timeout: HTTP timeout in seconds

    Returns:
        EVMProvider, UTXOProvider or SolanaProvider instance
    """
    overrides = overrides or EndpointOverrides()

    if url.startswith("sim://"):
        from hotwallet.providers.simulated import create_simulated_provider

        return create_simulated_provider(config, url)

    if config.family == NetworkFamily.EVM:
        from hotwallet.providers.evm import EVMRpcProvider, EtherscanExplorer

        explorer = None
        if overrides.explorer_api_url:
            explorer = EtherscanExplorer(
                overrides.explorer_api_url, overrides.explorer_api_key, timeout=timeout
            )
        return EVMRpcProvider(url, ws_url=overrides.ws_url, explorer=explorer, timeout=timeout)

    if config.family == NetworkFamily.UTXO:
        from hotwallet.providers.esplora import EsploraProvider

        return EsploraProvider(url, timeout=timeout)

    from hotwallet.providers.solana import SolanaRpcProvider

    return SolanaRpcProvider(url, ws_url=overrides.ws_url, timeout=timeout)
