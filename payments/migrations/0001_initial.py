from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Transaction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("order_id", models.CharField(db_index=True, max_length=191)),
                ("payment_id", models.CharField(db_index=True, max_length=191)),
                (
                    "status",
                    models.CharField(
                        choices=[("SUCCESS", "Success"), ("FAILED", "Failed")],
                        max_length=20,
                    ),
                ),
                ("amount", models.PositiveBigIntegerField(blank=True, null=True)),
                ("method", models.CharField(blank=True, max_length=64)),
                ("reason", models.CharField(blank=True, max_length=255)),
                ("raw_response", models.JSONField(blank=True, default=dict)),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="VerificationAttempt",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("order_id", models.CharField(db_index=True, max_length=191)),
                ("payment_id", models.CharField(db_index=True, max_length=191)),
                (
                    "source",
                    models.CharField(
                        choices=[("direct", "Direct verify"), ("callback", "Gateway callback")],
                        default="direct",
                        max_length=20,
                    ),
                ),
                ("received_signature", models.CharField(blank=True, max_length=191)),
                ("computed_signature", models.CharField(blank=True, max_length=191)),
                ("signature_matched", models.BooleanField(default=False)),
                (
                    "status_from_gateway",
                    models.CharField(
                        blank=True,
                        choices=[("captured", "Captured"), ("other", "Other")],
                        max_length=20,
                        null=True,
                    ),
                ),
                (
                    "verdict",
                    models.CharField(
                        choices=[
                            ("valid", "Valid"),
                            ("invalid", "Invalid"),
                            ("duplicate", "Duplicate"),
                            ("error", "Error"),
                        ],
                        max_length=20,
                    ),
                ),
                ("reason", models.CharField(blank=True, max_length=64)),
                ("gateway_response", models.JSONField(blank=True, default=dict)),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.AddConstraint(
            model_name="transaction",
            constraint=models.UniqueConstraint(
                condition=models.Q(("status", "SUCCESS")),
                fields=("payment_id",),
                name="unique_success_per_payment",
            ),
        ),
    ]
