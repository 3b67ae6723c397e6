from locust import HttpUser, task, constant

class SignalUser(HttpUser):
    # Each user polls the latest snapshot about once per second
    wait_time = constant(1.0)

    @task(3)
    def get_signal(self):
        self.client.get("/signal", params={"symbol": "XYZ"})

    @task(1)
    def get_health(self):
        self.client.get("/health")
