import os
import logging
import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
from django.conf import settings

from .errors import ObjectNotFound

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {'NoSuchKey', '404', 'NotFound'}


def setting(name, default=None):
    """
    Read a setting from Django settings, falling back to the environment.
    """
    return getattr(settings, name, os.getenv(name, default))


def get_boto3_session():
    aws_key = setting("AWS_ACCESS_KEY_ID")
    aws_secret = setting("AWS_SECRET_ACCESS_KEY")
    region = setting("AWS_S3_REGION_NAME", "us-east-1")

    # Let boto3 fall back to its own credential chain (IAM role, profile) when unset
    if not aws_key or not aws_secret:
        logger.warning("AWS credentials appear unset. Falling back to the default boto3 credential chain.")
        aws_key = aws_secret = None

    return boto3.Session(
        aws_access_key_id=aws_key,
        aws_secret_access_key=aws_secret,
        region_name=region
    )


def get_s3_client():
    """
    Create and return a boto3 S3 client using environment/settings.
    Uses signature_version='s3v4' which is broadly compatible.
    """
    config = Config(signature_version='s3v4', retries={'max_attempts': 3})
    return get_boto3_session().client('s3', config=config)


class ObjectStore:
    """
    Hierarchical key/value blob store used by the transcoding engine.

    Keys are '/'-delimited strings. Implementations raise ObjectNotFound from
    get() when the key is absent.
    """

    def get(self, key):
        raise NotImplementedError

    def put(self, key, body, content_type):
        raise NotImplementedError

    def exists(self, key) -> bool:
        raise NotImplementedError


class S3ObjectStore(ObjectStore):
    """
    ObjectStore backed by one S3 bucket.
    Sends a ServerSideEncryption header with every PutObject (complies with bucket policy).
    """

    def __init__(self, bucket=None, client=None, sse_algorithm=None, kms_key_id=None):
        self.bucket = bucket or setting('AWS_STORAGE_BUCKET_NAME')
        if not self.bucket:
            raise ValueError("S3 bucket name not configured (AWS_STORAGE_BUCKET_NAME).")
        self.client = client or get_s3_client()
        self.sse_algorithm = sse_algorithm or setting('AWS_S3_DEFAULT_SSE', 'AES256')
        self.kms_key_id = kms_key_id or setting('AWS_S3_KMS_KEY_ID')

    def get(self, key):
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get('Error', {}).get('Code') in _NOT_FOUND_CODES:
                raise ObjectNotFound(key) from exc
            raise
        return response['Body']

    def put(self, key, body, content_type):
        extra_args = {
            'ContentType': content_type,
            'ServerSideEncryption': self.sse_algorithm,
        }
        if self.sse_algorithm == 'aws:kms' and self.kms_key_id:
            extra_args['SSEKMSKeyId'] = self.kms_key_id

        logger.info(f"Uploading s3://{self.bucket}/{key} (content-type={content_type}, sse={self.sse_algorithm})")
        self.client.put_object(Bucket=self.bucket, Key=key, Body=body, **extra_args)

    def exists(self, key) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as exc:
            if exc.response.get('Error', {}).get('Code') in _NOT_FOUND_CODES:
                return False
            raise
