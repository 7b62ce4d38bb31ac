from decimal import Decimal

from django.db import migrations, models
import django.db.models.deletion
from django.conf import settings
import payroll.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ('users', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='InviteCode',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(default=payroll.models.generate_invite_code, max_length=6, unique=True)),
                ('used', models.BooleanField(default=False)),
                ('used_by', models.CharField(blank=True, help_text='Wallet that redeemed the code', max_length=42)),
                ('used_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('business', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='invite_codes', to='users.business')),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['business', 'used'], name='payroll_inv_busines_3f1c2a_idx')],
            },
        ),
        migrations.CreateModel(
            name='StaffMember',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('deleted_at', models.DateTimeField(blank=True, help_text='Soft delete timestamp', null=True)),
                ('name', models.CharField(blank=True, max_length=255)),
                ('wallet_address', models.CharField(help_text='Payout wallet (checksummed)', max_length=42)),
                ('salary', models.DecimalField(decimal_places=6, default=Decimal('3000'), max_digits=19)),
                ('status', models.CharField(choices=[('pending', 'Pending approval'), ('active', 'Active')], default='pending', max_length=10)),
                ('prefer_usyc', models.BooleanField(default=False, help_text='Staff-only preference: receive salary as USYC. Never shown to the business.')),
                ('joined_at', models.DateTimeField(auto_now_add=True)),
                ('approved_at', models.DateTimeField(blank=True, null=True)),
                ('last_payment_at', models.DateTimeField(blank=True, null=True)),
                ('business', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='staff_members', to='users.business')),
                ('invite_code', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='registrations', to='payroll.invitecode')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='staff_memberships', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-joined_at'],
                'indexes': [
                    models.Index(fields=['business', 'status'], name='payroll_sta_busines_8d2e41_idx'),
                    models.Index(fields=['wallet_address'], name='payroll_sta_wallet__6b0f93_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('deleted_at__isnull', True)), fields=('user',), name='one_active_membership_per_user'),
                ],
            },
        ),
        migrations.CreateModel(
            name='PayrollRun',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('deleted_at', models.DateTimeField(blank=True, help_text='Soft delete timestamp', null=True)),
                ('run_id', models.CharField(default=payroll.models.generate_run_id, editable=False, max_length=32, unique=True)),
                ('status', models.CharField(choices=[('READY', 'Ready'), ('PREPARED', 'Prepared'), ('PROCESSING', 'Processing'), ('PARTIAL', 'Partial'), ('COMPLETED', 'Completed'), ('FAILED', 'Failed'), ('CANCELLED', 'Cancelled')], default='READY', max_length=20)),
                ('execution_mode', models.CharField(blank=True, choices=[('batch', 'Batch contract'), ('sequential', 'Sequential transfers')], max_length=20)),
                ('total_amount', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=19)),
                ('blockchain_data', models.JSONField(blank=True, help_text='Plan, unsigned transactions and hashes', null=True)),
                ('submitted_at', models.DateTimeField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('business', models.ForeignKey(help_text='Business owning this payroll run', on_delete=django.db.models.deletion.CASCADE, related_name='payroll_runs', to='users.business')),
                ('created_by_user', models.ForeignKey(help_text='User who created the payroll run', on_delete=django.db.models.deletion.CASCADE, related_name='payroll_runs_created', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['run_id'], name='payroll_pay_run_id_5a7c10_idx'),
                    models.Index(fields=['business', 'status'], name='payroll_pay_busines_c41d77_idx'),
                    models.Index(fields=['created_by_user'], name='payroll_pay_created_0e9b52_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='PayrollItem',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('deleted_at', models.DateTimeField(blank=True, help_text='Soft delete timestamp', null=True)),
                ('item_id', models.CharField(default=payroll.models.generate_payroll_item_id, editable=False, max_length=32, unique=True)),
                ('recipient_address', models.CharField(max_length=42)),
                ('amount', models.DecimalField(decimal_places=6, help_text='Salary in USDC', max_digits=19)),
                ('token_type', models.CharField(choices=[('USDC', 'USD Coin'), ('USYC', 'Hashnote US Yield Coin')], default='USDC', max_length=10)),
                ('token_amount', models.DecimalField(blank=True, decimal_places=6, help_text='Amount delivered in token_type', max_digits=19, null=True)),
                ('status', models.CharField(choices=[('PENDING', 'Pending'), ('PREPARED', 'Prepared'), ('SUBMITTED', 'Submitted'), ('CONFIRMED', 'Confirmed'), ('FAILED', 'Failed'), ('CANCELLED', 'Cancelled')], default='PENDING', max_length=20)),
                ('transaction_hash', models.CharField(blank=True, help_text='Payout transaction hash', max_length=66)),
                ('error_message', models.TextField(blank=True)),
                ('executed_at', models.DateTimeField(blank=True, null=True)),
                ('run', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='items', to='payroll.payrollrun')),
                ('staff', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='payroll_items', to='payroll.staffmember')),
            ],
            options={
                'ordering': ['created_at', 'id'],
                'indexes': [
                    models.Index(fields=['item_id'], name='payroll_pay_item_id_9e3f21_idx'),
                    models.Index(fields=['run', 'status'], name='payroll_pay_run_id_b27a4c_idx'),
                    models.Index(fields=['transaction_hash'], name='payroll_pay_transac_7d51e8_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('deleted_at__isnull', True)), fields=('run', 'staff'), name='unique_staff_per_run_if_not_deleted'),
                ],
            },
        ),
    ]
