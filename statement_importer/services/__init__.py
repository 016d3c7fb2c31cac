"""Services package: pipeline composition, import job operations and object storage."""
