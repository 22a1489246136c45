import asyncio

from botocore.exceptions import ClientError

from dataset_service.clients import create_s3_client
from dataset_service.config import settings


def _cors_configuration() -> dict[str, object]:
    # browsers PUT files straight to the bucket with presigned urls
    return {
        "CORSRules": [
            {
                "AllowedOrigins": settings.s3.cors_origins,
                "AllowedMethods": ["PUT"],
                "AllowedHeaders": ["*"],
                "ExposeHeaders": ["ETag"],
                "MaxAgeSeconds": 3600,
            }
        ]
    }


async def create_bucket() -> None:
    bucket_name = settings.s3.bucket

    async with create_s3_client() as s3:
        try:
            await s3.head_bucket(Bucket=bucket_name)
            print(f"Bucket '{bucket_name}' already exists")
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "")
            if error_code not in {"404", "NoSuchBucket", "NotFound"}:
                raise

            await s3.create_bucket(Bucket=bucket_name)
            await s3.get_waiter("bucket_exists").wait(Bucket=bucket_name)
            print(f"Bucket '{bucket_name}' created")

        await s3.put_bucket_cors(Bucket=bucket_name, CORSConfiguration=_cors_configuration())
        print(f"CORS rules applied to '{bucket_name}'")


if __name__ == "__main__":
    asyncio.run(create_bucket())
