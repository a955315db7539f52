"""
Tests for the S3 object store client and storage key derivation.
"""

import boto3
import pytest
from botocore.stub import ANY, Stubber

from playbill_backend.configuration import AWSSettings
from playbill_backend.errors import ConfigError, StorageFault
from playbill_backend.models import EntityType, ImagePurpose
from playbill_backend.s3_service import S3Service, build_storage_key

BUCKET = "playbill-test-bucket"
KEY = "poster/musical/3f0c1a52-2d4b-4d3c-9a52-6c1d9f2b7e01/6b1f3a9e-0c4e-4b8f-a5d2-1e7c9f3b2a10.jpg"


@pytest.fixture
def aws_settings():
    return AWSSettings(
        access_key_id="test-access-key",
        secret_access_key="test-secret-key",
        bucket=BUCKET,
        region="us-east-1",
    )


@pytest.fixture
def s3_client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="test-access-key",
        aws_secret_access_key="test-secret-key",
    )


@pytest.fixture
def stubbed(s3_client):
    with Stubber(s3_client) as stubber:
        yield stubber
        stubber.assert_no_pending_responses()


class TestStorageKey:
    """Storage keys are a pure function of their inputs."""

    ARGS = (ImagePurpose.POSTER, EntityType.MUSICAL, "m-1", "jpg", "a-1")

    def test_identical_inputs_identical_key(self):
        assert build_storage_key(*self.ARGS) == build_storage_key(*self.ARGS)

    @pytest.mark.parametrize(
        "index,replacement",
        [
            (0, ImagePurpose.PROFILE),
            (1, EntityType.PERFORMANCE),
            (2, "m-2"),
            (3, "png"),
            (4, "a-2"),
        ],
    )
    def test_any_changed_input_changes_key(self, index, replacement):
        args = list(self.ARGS)
        args[index] = replacement
        assert build_storage_key(*args) != build_storage_key(*self.ARGS)

    def test_key_layout(self):
        assert build_storage_key(*self.ARGS) == "poster/musical/m-1/a-1.jpg"

    def test_extension_is_normalized(self):
        assert build_storage_key(ImagePurpose.PROFILE, EntityType.USER, "u-1", ".JPG", "a-1") == "profile/user/u-1/a-1.jpg"

    def test_missing_component_raises(self):
        with pytest.raises(ValueError):
            build_storage_key(ImagePurpose.POSTER, EntityType.MUSICAL, "", "jpg", "a-1")


class TestConfiguration:
    def test_missing_settings_raise_config_error(self):
        service = S3Service(AWSSettings(access_key_id="key"))
        with pytest.raises(ConfigError) as excinfo:
            service.ensure_configured()
        assert "AWS_SECRET_ACCESS_KEY" in excinfo.value.message
        assert "AWS_S3_BUCKET" in excinfo.value.message

    def test_put_without_bucket_is_config_error(self):
        service = S3Service(AWSSettings(access_key_id="key", secret_access_key="secret"))
        with pytest.raises(ConfigError):
            service.put(b"data", KEY, "image/jpeg")

    def test_configured_settings_pass(self, aws_settings):
        S3Service(aws_settings).ensure_configured()


class TestPut:
    def test_put_returns_public_locator(self, aws_settings, s3_client, stubbed):
        stubbed.add_response(
            "put_object",
            {},
            {
                "Bucket": BUCKET,
                "Key": KEY,
                "Body": ANY,
                "ContentType": "image/jpeg",
                "Metadata": {"originalName": "les_mis_rables.jpg"},
            },
        )
        service = S3Service(aws_settings, url_mode="public", client=s3_client)

        locator = service.put(b"jpeg-bytes", KEY, "image/jpeg", {"originalName": "Les Misérables.jpg"})
        assert locator == f"https://{BUCKET}.s3.us-east-1.amazonaws.com/{KEY}"

    def test_put_returns_presigned_locator(self, aws_settings, s3_client, stubbed):
        stubbed.add_response("put_object", {}, None)
        service = S3Service(aws_settings, url_mode="presigned", presign_expiration=600, client=s3_client)

        locator = service.put(b"jpeg-bytes", KEY, "image/jpeg")
        assert locator.startswith("https://")
        assert KEY in locator
        assert "Expires" in locator

    def test_access_denied_is_storage_fault(self, aws_settings, s3_client, stubbed):
        stubbed.add_client_error("put_object", service_error_code="AccessDenied", http_status_code=403)
        service = S3Service(aws_settings, client=s3_client)

        with pytest.raises(StorageFault) as excinfo:
            service.put(b"jpeg-bytes", KEY, "image/jpeg")
        assert "Access denied" in excinfo.value.message
        assert KEY not in excinfo.value.message

    def test_empty_body_is_rejected(self, aws_settings, s3_client):
        service = S3Service(aws_settings, client=s3_client)
        with pytest.raises(StorageFault):
            service.put(b"", KEY, "image/jpeg")

    def test_custom_endpoint_public_url(self):
        settings = AWSSettings(
            access_key_id="k",
            secret_access_key="s",
            bucket=BUCKET,
            endpoint_url="http://localhost:9000/",
        )
        service = S3Service(settings, url_mode="public")
        assert service.public_url("a/b.jpg") == f"http://localhost:9000/{BUCKET}/a/b.jpg"


class TestDelete:
    def test_delete_calls_s3(self, aws_settings, s3_client, stubbed):
        stubbed.add_response("delete_object", {}, {"Bucket": BUCKET, "Key": KEY})
        S3Service(aws_settings, client=s3_client).delete(KEY)

    def test_delete_error_is_storage_fault(self, aws_settings, s3_client, stubbed):
        stubbed.add_client_error("delete_object", service_error_code="NoSuchBucket", http_status_code=404)
        with pytest.raises(StorageFault) as excinfo:
            S3Service(aws_settings, client=s3_client).delete(KEY)
        assert "Bucket not found" in excinfo.value.message
