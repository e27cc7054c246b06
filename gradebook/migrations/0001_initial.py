from decimal import Decimal

from django.conf import settings
import django.core.validators
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('academics', '0001_initial'),
        ('core', '0001_initial'),
        ('students', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Exam',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(help_text='e.g., Midterm, End of Term Examination', max_length=100)),
                ('exam_type', models.CharField(choices=[('quiz', 'Quiz'), ('test', 'Test'), ('midterm', 'Midterm'), ('final', 'Final'), ('assignment', 'Assignment'), ('project', 'Project')], default='test', max_length=20)),
                ('max_score', models.DecimalField(decimal_places=2, default=Decimal('100.00'), help_text='Highest score a student can obtain per subject', max_digits=6, validators=[django.core.validators.MinValueValidator(Decimal('1'))])),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('academic_year', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='exams', to='core.academicyear')),
                ('term', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='exams', to='core.term')),
            ],
            options={
                'verbose_name': 'Exam',
                'verbose_name_plural': 'Exams',
                'ordering': ['-academic_year__start_date', 'name'],
            },
        ),
        migrations.CreateModel(
            name='Mark',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('score', models.DecimalField(decimal_places=2, help_text='Score obtained, bounded by the exam max score', max_digits=6, validators=[django.core.validators.MinValueValidator(Decimal('0'))])),
                ('entered_at', models.DateTimeField(auto_now=True)),
                ('entered_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='entered_marks', to=settings.AUTH_USER_MODEL)),
                ('exam', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='marks', to='gradebook.exam')),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='marks', to='students.student')),
                ('subject', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='marks', to='academics.subject')),
            ],
            options={
                'verbose_name': 'Mark',
                'verbose_name_plural': 'Marks',
                'ordering': ['exam', 'student', 'subject'],
                'indexes': [models.Index(fields=['exam', 'student'], name='mark_exam_student_idx')],
                'constraints': [
                    models.UniqueConstraint(fields=('exam', 'student', 'subject'), name='unique_mark_per_exam_student_subject'),
                    models.CheckConstraint(condition=models.Q(('score__gte', 0)), name='mark_score_non_negative'),
                ],
            },
        ),
    ]
