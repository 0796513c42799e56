# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""Parameter Store module used by the deployer
"""

from botocore.config import Config

from isb_deployer.errors import ParameterNotFoundError
from isb_deployer.logger import configure_logger

LOGGER = configure_logger(__name__)
SSM_CONFIG = Config(
    retries={
        "max_attempts": 10,
    },
)


class ParameterStore:
    """Class used for modeling Parameters
    """

    def __init__(self, region, role):
        self.client = role.client('ssm', region_name=region, config=SSM_CONFIG)

    def fetch_parameter(self, name, with_decryption=False):
        """Gets a Parameter from Parameter Store (Returns the Value)
        """
        try:
            LOGGER.debug('Fetching Parameter %s', name)
            response = self.client.get_parameter(
                Name=name,
                WithDecryption=with_decryption
            )
            return response['Parameter']['Value']
        except self.client.exceptions.ParameterNotFound:
            raise ParameterNotFoundError(
                f'Parameter {name} Not Found',
            ) from None
