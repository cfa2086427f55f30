import pulumi
import pulumi_aws as aws
from typing import Optional


def create_state_backend(bucket_name: str, tags: Optional[dict] = None) -> aws.s3.BucketV2:
  """
  Encrypted, versioned bucket for Pulumi state.

  Bootstrap it from a local backend once, then migrate with:
    pulumi login s3://<bucket_name>
  """
  if tags is None:
    tags = {}

  key = aws.kms.Key("state-key",
    description=f"Encrypts Pulumi state in {bucket_name}",
    enable_key_rotation=True,
    deletion_window_in_days=30,
    tags=tags,
  )

  bucket = aws.s3.BucketV2("state-bucket",
    bucket=bucket_name,
    tags=tags,
    opts=pulumi.ResourceOptions(protect=True),  # Losing state orphans every other resource
  )

  aws.s3.BucketVersioningV2("state-bucket-versioning",
    bucket=bucket.id,
    versioning_configuration=aws.s3.BucketVersioningV2VersioningConfigurationArgs(
      status="Enabled",
    ),
    opts=pulumi.ResourceOptions(parent=bucket),
  )

  aws.s3.BucketServerSideEncryptionConfigurationV2("state-bucket-encryption",
    bucket=bucket.id,
    rules=[aws.s3.BucketServerSideEncryptionConfigurationV2RuleArgs(
      apply_server_side_encryption_by_default=aws.s3.BucketServerSideEncryptionConfigurationV2RuleApplyServerSideEncryptionByDefaultArgs(
        sse_algorithm="aws:kms",
        kms_master_key_id=key.arn,
      ),
      bucket_key_enabled=True,
    )],
    opts=pulumi.ResourceOptions(parent=bucket),
  )

  aws.s3.BucketPublicAccessBlock("state-bucket-public-access-block",
    bucket=bucket.id,
    block_public_acls=True,
    block_public_policy=True,
    ignore_public_acls=True,
    restrict_public_buckets=True,
    opts=pulumi.ResourceOptions(parent=bucket),
  )

  pulumi.export("state_bucket_name", bucket.bucket)
  pulumi.export("state_backend_url", bucket.bucket.apply(lambda b: f"s3://{b}"))

  return bucket
