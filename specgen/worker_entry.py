from workers import WorkerEntrypoint
from specgen.main import app
import asgi

class Default(WorkerEntrypoint):
    async def fetch(self, request):
        # Bindings (OPENAI_API_KEY and friends) reach the handlers as request.scope["env"]
        return await asgi.fetch(app, request, self.env)
