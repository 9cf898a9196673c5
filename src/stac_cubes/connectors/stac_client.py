"""STAC API client resource feeding the feature catalog adapter."""

from typing import Any

from dagster import ConfigurableResource
from planetary_computer import sign_inplace
from pystac_client import Client

from stac_cubes.connectors.settings import SettingsResource


class STACResource(ConfigurableResource[Any]):
    """Opens the configured STAC API.

    :param settings: Settings resource providing the API URL
    :param sign_assets: Sign asset hrefs for Planetary Computer storage as items are fetched
    """

    settings: SettingsResource
    sign_assets: bool = False

    def create_client(self) -> Any:
        """Create STAC client.

        :returns: pystac_client Client, signing asset hrefs when ``sign_assets`` is set
        """
        modifier = sign_inplace if self.sign_assets else None
        return Client.open(self.settings.stac_api_url, modifier=modifier)
