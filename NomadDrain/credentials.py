import base64
import time

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from tenacity import RetryError

from .clients import VaultClient
from .clients import create_retrying
from .config import Config
from .entity import Deadline
from .entity import FederatedIdentity
from .entity import ScopedToken
from .exceptions import AuthError
from .exceptions import InvalidResponseError
from .exceptions import RequestRejected
from .logging import Logging

# https://github.com/hashicorp/vault/blob/main/builtin/credential/aws/path_login.go
IAM_SERVER_ID_HEADER = 'X-Vault-AWS-IAM-Server-ID'
STS_REQUEST_BODY = 'Action=GetCallerIdentity&Version=2011-06-15'
GLOBAL_STS_REGION = 'us-east-1'


def build_federated_identity(credentials, header_value: str = None, region: str = None) -> FederatedIdentity:
    """
    Sign a sts:GetCallerIdentity request that vault will replay to verify who we are.
    Without a region the global sts endpoint is used.

    :param credentials: botocore credentials
    :type header_value: str
    :param header_value: Value of the iam_server_id_header_value, if vault has one configured
    """
    if region:
        host = 'sts.%s.amazonaws.com' % region
    else:
        host = 'sts.amazonaws.com'
        region = GLOBAL_STS_REGION

    url = 'https://%s/' % host
    request = AWSRequest(
        method = 'POST',
        url = url,
        data = STS_REQUEST_BODY,
        headers = {
            'Content-Type': 'application/x-www-form-urlencoded; charset=utf-8',
            'Host': host
        }
    )
    if header_value:
        request.headers[IAM_SERVER_ID_HEADER] = header_value

    SigV4Auth(credentials, 'sts', region).add_auth(request)

    return FederatedIdentity(
        iam_http_request_method = 'POST',
        iam_request_url = base64.b64encode(url.encode('utf-8')).decode('utf-8'),
        iam_request_body = base64.b64encode(STS_REQUEST_BODY.encode('utf-8')).decode('utf-8'),
        iam_request_headers = { k: [v] for k, v in request.headers.items() }
    )


class CredentialExchanger(object):
    """
    Exchanges the ambient AWS identity for a short lived nomad token.

    1. sign sts:GetCallerIdentity with the session's credentials
    2. login to vault's aws auth method with the signed request
    3. read a nomad token from vault's nomad secrets engine

    Static tokens from the configuration short cut the respective steps.
    Transient failures are retried, rejected requests are not: they point to a misconfiguration.
    """


    def __init__(self, config: Config, session: Session, vault: VaultClient, logging: Logging, sleep = time.sleep):
        self.config = config
        self.session = session
        self.vault = vault
        self.logger = logging.get_logger()
        self.formatter = logging.get_formatter()
        self.sleep = sleep


    def exchange(self, deadline: Deadline):
        """
        :rtype: ScopedToken
        :return: The nomad token or None, if nomad does not require a token
        """
        if not self.config.use_nomad_token:
            self.logger.info('No nomad token in use')
            return None

        if self.config.nomad_token is not None:
            self.logger.info('Using configured nomad token')
            return ScopedToken(self.config.nomad_token)

        if self.config.vault_token is not None:
            self.logger.info('Using configured vault token')
            vault_token = self.config.vault_token
        else:
            self.logger.info('No vault token configured. Using aws credentials to login to vault')
            vault_token = self.__call(lambda: self.__login(deadline), deadline, 'vault login')

        token = self.__call(
            lambda: self.vault.read_nomad_token(
                vault_token, self.config.nomad_path, self.config.nomad_role, deadline = deadline
            ),
            deadline,
            'reading nomad token'
        )
        self.logger.info('Obtained nomad token %s with lease of %s seconds', token.value, token.lease_duration)

        return token


    def get_federated_identity(self) -> FederatedIdentity:
        credentials = self.session.get_credentials()
        if credentials is None:
            raise self.formatter.get_error(AuthError, 'No aws credentials found in the execution environment')

        return build_federated_identity(
            credentials.get_frozen_credentials(),
            self.config.auth_header_value,
            self.config.region
        )


    def __login(self, deadline: Deadline):
        return self.vault.login_aws_iam(
            self.config.auth_path,
            self.config.auth_role,
            self.get_federated_identity(),
            deadline = deadline
        )


    def __call(self, action, deadline: Deadline, description: str):
        deadline.ensure_not_expired(description)

        retrying = create_retrying(self.config.auth_max_attempts, deadline, self.logger, self.sleep)
        try:
            for attempt in retrying:
                with attempt:
                    result = action()

        except RetryError as e:
            raise self.formatter.get_error(
                AuthError,
                '%s failed after %s attempts: %s',
                description,
                str(e.last_attempt.attempt_number),
                repr(e.last_attempt.exception())
            )

        except (RequestRejected, InvalidResponseError) as e:
            raise self.formatter.get_error(AuthError, '%s failed: %s', description, e.get_message())

        return result
