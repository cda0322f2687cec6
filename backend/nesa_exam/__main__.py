import uvicorn

from .settings import settings


def main() -> None:
	uvicorn.run(
		"nesa_exam.main:app",
		host=settings.api_host,
		port=settings.api_port,
		reload=settings.reload,
		log_level=settings.log_level.lower(),
	)


if __name__ == "__main__":
	main()
