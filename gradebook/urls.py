from django.urls import path
from . import views

app_name = 'gradebook'

urlpatterns = [
    # Analytics
    path('classes/<int:class_id>/exams/<int:exam_id>/analytics/', views.class_analytics, name='class_analytics'),
    path('classes/<int:class_id>/exams/<int:exam_id>/analytics.csv', views.export_analytics_csv, name='export_analytics_csv'),
    path('classes/<int:class_id>/exams/<int:exam_id>/analytics.xlsx', views.export_analytics_xlsx, name='export_analytics_xlsx'),

    # Report cards
    path('students/<int:student_id>/exams/<int:exam_id>/report/', views.download_student_report, name='download_student_report'),
    path('classes/<int:class_id>/exams/<int:exam_id>/reports.zip', views.download_class_bundle, name='download_class_bundle'),
]
