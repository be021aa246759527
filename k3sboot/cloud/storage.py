"""
storage.py
==========

Upload artifacts to durable object storage (S3).

Credentials are resolved when the client is created: the ``current``
variant relies on the role attached to the instance through boto3's
default credential chain, the ``legacy`` variant uses the static keys of
the configuration file. Keys are handed to the boto3 session only and
never exported into the process environment.
"""
import boto3
from botocore.exceptions import BotoCoreError, ClientError

from k3sboot.util.logger import Logger

LOGGER = Logger(__name__)


class StorageError(RuntimeError):
    """An object could not be stored"""


def get_session(config):
    """Create a boto3 session for the configured variant

    Args:
        config (:class:`k3sboot.config.BootConfig`): the node configuration

    Returns:
        A ``boto3.session.Session``
    """
    if config.variant == 'legacy':
        LOGGER.debug("Using static credentials from the configuration")
        return boto3.session.Session(
            aws_access_key_id=config.aws_access_key_id,
            aws_secret_access_key=config.aws_secret_access_key,
            region_name=config.region)

    return boto3.session.Session(region_name=config.region)


def object_key(cluster_id):
    """The key of the published kubeconfig of a cluster"""
    return f"{cluster_id}.yaml"


class S3Store:
    """Store objects in an S3 bucket

    Args:
        bucket (str): the bucket name
        region (str): the bucket region
        session: a ``boto3.session.Session``, created when not given
    """

    def __init__(self, bucket, region, session=None):
        self.bucket = bucket
        self.region = region
        if session is None:
            session = boto3.session.Session(region_name=region)
        self.client = session.client("s3", region_name=region)

    def upload(self, key, body, content_type="application/yaml"):
        """Put ``body`` at ``key``, replacing any existing object

        Raises:
            StorageError if the upload failed
        """
        if isinstance(body, str):
            body = body.encode()

        LOGGER.info("Uploading s3://%s/%s ...", self.bucket, key)
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=body,
                                   ContentType=content_type,
                                   ServerSideEncryption="AES256")
        except (BotoCoreError, ClientError) as err:
            raise StorageError(
                f"upload to s3://{self.bucket}/{key} failed: {err}") from err

        return f"s3://{self.bucket}/{key}"

    @classmethod
    def from_config(cls, config):
        """Create a store for the bucket of the configuration"""
        return cls(config.bucket, config.region, session=get_session(config))
