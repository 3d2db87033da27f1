from ratings.service import create_rating_service
from ratings.templates import create_rating_template_service

rating_service = create_rating_service()
rating_template_service = create_rating_template_service()
